"""Service layer: lookup, file storage, counters and HTTP helpers."""
