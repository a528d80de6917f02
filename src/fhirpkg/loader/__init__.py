"""Package installation and artifact loading."""
