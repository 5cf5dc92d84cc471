"""
Tests for configuration, structured logging and the clock
"""

import json
import logging
import pytest
from datetime import date, datetime

from emi_engine.clock import FixedClock, SystemClock
from emi_engine.config import EMIEngineConfig, get_config, reload_config
from emi_engine.exceptions import ConfigurationError
from emi_engine.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("EMI_INTEREST_RATE", raising=False)
        config = EMIEngineConfig(_env_file=None)
        assert config.interest_rate == 0.20
        assert config.min_loan_amount == 1000
        assert config.max_loan_amount == 100000
        assert config.max_total_days == 365
        assert config.sweep_on_read

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("EMI_DATABASE_PATH", ":memory:")
        monkeypatch.setenv("EMI_SWEEP_INTERVAL_SECONDS", "60")
        monkeypatch.setenv("EMI_LOG_FORMAT", "TEXT")

        config = EMIEngineConfig(_env_file=None)

        assert config.database_path == ":memory:"
        assert config.sweep_interval_seconds == 60
        assert config.log_format == "text"

    def test_invalid_values_rejected_on_reload(self, monkeypatch):
        monkeypatch.setenv("EMI_INTEREST_RATE", "1.5")
        try:
            with pytest.raises(ConfigurationError, match="interest_rate"):
                reload_config()
        finally:
            monkeypatch.delenv("EMI_INTEREST_RATE")
            reload_config()

    def test_get_config_is_cached(self):
        assert get_config() is get_config()


class TestLogging:
    def _record(self, **attributes):
        record = logging.LogRecord("emi_engine.accrual", logging.INFO, __file__, 1, "Processed 2", (), None)
        for key, value in attributes.items():
            setattr(record, key, value)
        return record

    def test_json_formatter_includes_structured_fields(self):
        output = JSONFormatter().format(self._record(action="process_overdues", extra={"checked": 4}))

        entry = json.loads(output)
        assert entry["level"] == "INFO"
        assert entry["logger"] == "emi_engine.accrual"
        assert entry["message"] == "Processed 2"
        assert entry["action"] == "process_overdues"
        assert entry["extra"] == {"checked": 4}
        assert "resource" not in entry

    def test_log_action_reaches_handlers(self):
        logger = setup_logging("DEBUG", logger_name="emi_engine.test_capture")
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger.addHandler(Capture())
        log_action(logger, "info", "Waived penalty", action="clear_overdue_penalty",
                   resource="emi:loan-1_1", correlation_id="abc", extra={"waived": 75})

        assert len(records) == 1
        assert records[0].resource == "emi:loan-1_1"
        assert records[0].correlation_id == "abc"

    def test_log_action_respects_level(self):
        logger = setup_logging("WARNING", logger_name="emi_engine.test_quiet", fmt="text")
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger.addHandler(Capture())
        log_action(logger, "info", "ignored")

        assert records == []
        assert not logger.propagate


class TestClock:
    def test_fixed_clock(self):
        clock = FixedClock(date(2025, 2, 12))
        assert clock.now() == datetime(2025, 2, 12, 9, 0)
        assert clock.today() == date(2025, 2, 12)
        assert clock.tomorrow() == date(2025, 2, 13)

        clock.advance(days=3)
        assert clock.today() == date(2025, 2, 15)

    def test_late_evening_is_still_today(self):
        clock = FixedClock(datetime(2025, 2, 12, 23, 59))
        assert clock.today() == date(2025, 2, 12)
        assert clock.tomorrow() == date(2025, 2, 13)

    def test_system_clock_time_zone(self):
        clock = SystemClock("Asia/Kolkata")
        assert clock.now().utcoffset().total_seconds() == 5.5 * 3600

    def test_unknown_time_zone(self):
        with pytest.raises(ConfigurationError, match="Unknown time zone"):
            SystemClock("Mars/Olympus_Mons")
