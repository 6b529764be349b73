"""
Pruebas de los scripts operativos: el simulador usa la configuración del
paquete y arma mensajes que el bridge acepta.
"""
import importlib.util
import os

import pytest

from heartshare import config
from heartshare.models import CompanionMessage, HeartRateData

SCRIPTS_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "scripts")


@pytest.fixture
def simulator():
    path = os.path.join(SCRIPTS_DIR, "companion_simulator.py")
    spec = importlib.util.spec_from_file_location("companion_simulator", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_simulator_default_url_comes_from_config(simulator):
    assert simulator.BASE_URL == config.BASE_URL


def test_simulator_message_is_valid_companion_payload(simulator):
    message = simulator.heart_rate_message("user_1", 72, timestamp=1700000000000.0, is_valid_reading=True)
    parsed = CompanionMessage.model_validate(message)
    payload = HeartRateData.model_validate(parsed.data)
    assert payload.user_id == "user_1"
    assert payload.heart_num == 72
    assert payload.is_valid_reading is True
