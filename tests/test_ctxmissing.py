import logging

import pytest

from xraystrategy.ctxmissing import (
    ContextMissingError,
    ContextMissingStrategy,
    IgnoreErrorStrategy,
    LogErrorStrategy,
    RuntimeErrorStrategy,
)


def test_runtime_error_strategy_raises_with_value():
    strategy = RuntimeErrorStrategy()
    with pytest.raises(ContextMissingError) as info:
        strategy.context_missing("TestRuntimeError")
    assert info.value.value == "TestRuntimeError"
    assert str(info.value) == "TestRuntimeError"


def test_log_error_strategy_logs_message(caplog):
    strategy = LogErrorStrategy()
    with caplog.at_level(logging.DEBUG, logger="xraystrategy"):
        strategy.context_missing("TestLogError")
    assert "Suppressing AWS X-Ray context missing panic: TestLogError" in caplog.text
    assert caplog.records[-1].levelno == logging.ERROR


def test_ignore_error_strategy_is_silent(caplog):
    strategy = IgnoreErrorStrategy()
    with caplog.at_level(logging.DEBUG, logger="xraystrategy"):
        result = strategy.context_missing("TestIgnoreError")
    assert result is None
    assert caplog.records == []


def test_abstract_strategy_cannot_be_instantiated():
    with pytest.raises(TypeError):
        ContextMissingStrategy()