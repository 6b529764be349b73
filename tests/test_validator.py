"""
Pruebas del validador de muestras del companion.
"""
import importlib

import pytest

from heartshare import config
from heartshare.models import HeartRateData
from heartshare.validator import Accepted, Rejected, RejectReason, is_valid_heart_rate, validate


def sample(bpm, **extra):
    data = {"userId": "user_1", "heartNum": bpm}
    data.update(extra)
    return HeartRateData.model_validate(data)


@pytest.mark.parametrize("bpm", [1, 72, 220])
def test_accepts_bpm_in_range(bpm):
    assert validate(sample(bpm)) == Accepted(bpm)


def test_above_max_is_silently_dropped():
    result = validate(sample(221))
    assert result == Rejected(RejectReason.OUT_OF_RANGE)
    assert result.resets is False


@pytest.mark.parametrize("bpm", [0, -5])
def test_zero_or_negative_resets(bpm):
    """El reloj manda 0 al detener la lectura: se trata como reset."""
    result = validate(sample(bpm))
    assert isinstance(result, Rejected)
    assert result.reason == RejectReason.OUT_OF_RANGE
    assert result.resets is True


@pytest.mark.parametrize("status", ["disconnected", "stopped"])
def test_reset_status(status):
    result = validate(sample(72, status=status))
    assert result == Rejected(RejectReason.EXPLICIT_RESET, resets=True)


def test_other_status_is_ignored():
    assert validate(sample(72, status="measuring")) == Accepted(72)


def test_source_flagged_invalid():
    result = validate(sample(72, isValidReading=False))
    assert result == Rejected(RejectReason.SOURCE_FLAGGED_INVALID)
    assert result.resets is False


def test_status_checked_before_range():
    result = validate(sample(500, status="stopped"))
    assert result.reason == RejectReason.EXPLICIT_RESET


def test_is_valid_heart_rate_bounds():
    assert not is_valid_heart_rate(0)
    assert is_valid_heart_rate(1)
    assert is_valid_heart_rate(220)
    assert not is_valid_heart_rate(221)


def test_bpm_bounds_ignore_environment(monkeypatch):
    """El rango 0 < bpm <= 220 es fijo: variables de entorno no lo amplían."""
    monkeypatch.setenv("MIN_BPM", "0")
    monkeypatch.setenv("MAX_BPM", "300")
    try:
        importlib.reload(config)
        assert (config.MIN_BPM, config.MAX_BPM) == (1, 220)
    finally:
        monkeypatch.undo()
        importlib.reload(config)
    assert validate(sample(0)) == Rejected(RejectReason.OUT_OF_RANGE, resets=True)
    assert validate(sample(250)) == Rejected(RejectReason.OUT_OF_RANGE)
