"""Incident ingestion: signal mappers, incident store, orchestrator, classifier."""

from app.incidents.ingest import IngestResult, batch_ingest, ingest

__all__ = ["IngestResult", "batch_ingest", "ingest"]
