"""Unit tests for structured logging."""

import io
import json
import logging

import pytest

from eventimport.monitoring.logging import LoggingOptions, setup_logging, with_context


def test_text_logs_carry_context():
    stream = io.StringIO()
    logger = setup_logging(LoggingOptions(level="DEBUG", stream=stream))
    with_context(logging.getLogger("eventimport.ingestion"), job_id="j1", stage="geocode-batch", batch=0).info("hello")

    line = stream.getvalue().strip()
    assert line == "INFO eventimport.ingestion [job_id=j1 stage=geocode-batch batch=0] hello"
    assert logger.propagate is False


def test_json_logs():
    stream = io.StringIO()
    setup_logging(LoggingOptions(json_logs=True, stream=stream))
    with_context(logging.getLogger("eventimport.geocoding"), provider="nominatim").warning("slow")

    record = json.loads(stream.getvalue())
    assert record["level"] == "WARNING"
    assert record["provider"] == "nominatim"
    assert record["msg"] == "slow"
    assert "job_id" not in record


def test_setup_replaces_handler():
    setup_logging()
    logger = setup_logging(LoggingOptions(level="warning"))
    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING


def test_context_can_be_left_out():
    stream = io.StringIO()
    setup_logging(LoggingOptions(include_context=False, stream=stream))
    with_context(logging.getLogger("eventimport.ingestion"), job_id="j1").info("plain")

    assert stream.getvalue().strip() == "INFO eventimport.ingestion plain"


def test_audit_fields_in_text_logs():
    stream = io.StringIO()
    setup_logging(LoggingOptions(stream=stream))
    with_context(logging.getLogger("eventimport.ingestion"), job_id="j1", from_stage="failed", to_stage="geocode-batch", actor="alice").info(
        "recovered"
    )

    assert "[job_id=j1 from_stage=failed to_stage=geocode-batch actor=alice] recovered" in stream.getvalue()


def test_unknown_context_field():
    with pytest.raises(TypeError):
        with_context(logging.getLogger("eventimport"), user="alice")
