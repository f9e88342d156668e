"""
Pydantic models shared across the pipeline.

- dataset.py: dataset configuration, import sources, schema versions
- import_job.py: processing stages and the import job record
- geocoding.py: provider settings, geocoding results, cache entries
- values.py: tagged value tree for row data
"""
