"""Import processing pipeline: duplicate analysis, schema handling, stages and worker."""
