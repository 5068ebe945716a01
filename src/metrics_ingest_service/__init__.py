"""Metrics ingest gateway: accepts monitoring samples and stores them per workflow/task partition."""
