"""Service layer: vendor adapters, analysis, notifications and digests."""
