"""
Event import pipeline.

Architecture:
  configs/     Settings (pydantic-settings), pipeline.yaml loader
  monitoring/  Structured logging with job/stage context
  schemas/     Pydantic models for datasets, import jobs, geocoding; tagged row values
  storage/     Document store and task queue adapters, row readers
  geocoding/   Address normalizer, location cache, provider pool, geocoding service
  ingestion/   Duplicate analysis, schema inference, stage transition engine, workers

Entry points:
  from eventimport.ingestion.worker import PipelineWorker, build_worker
  from eventimport.geocoding.service import GeocodingService
"""

__version__ = "0.1.0"
