"""Wire verification — trial pairs, capture filters, and the traffic oracle."""
