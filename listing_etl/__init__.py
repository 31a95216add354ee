"""Real-estate listing discovery and enrichment ETL."""
