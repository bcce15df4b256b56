"""Step catalogs — concrete step graphs built from a HostSpec."""
