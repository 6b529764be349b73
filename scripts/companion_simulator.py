"""
Simulador del companion (reloj): envía mensajes heartRate al bridge.
note: el bridge debe estar corriendo (python main.py)
"""
import argparse
import os
import random
import sys
import time
from typing import Dict, Optional

import requests

# Agregar el directorio raíz al PYTHONPATH para que pueda encontrar el paquete 'heartshare'
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from heartshare.config import BASE_URL


def heart_rate_message(
    user_id: str,
    heart_num: int,
    timestamp: Optional[float] = None,
    status: Optional[str] = None,
    is_valid_reading: Optional[bool] = None,
) -> Dict:
    """Arma un mensaje heartRate con el formato del companion."""
    data = {
        "userId": user_id,
        "heartNum": heart_num,
        "timestamp": timestamp if timestamp is not None else time.time() * 1000,
    }
    if status is not None:
        data["status"] = status
    if is_valid_reading is not None:
        data["isValidReading"] = is_valid_reading
    return {"type": "heartRate", "data": data}


def next_bpm(current: int) -> int:
    """Deriva aleatoria suave; a veces repite el valor (el bridge no lo reescribe)."""
    if random.random() < 0.4:
        return current
    return max(45, min(190, current + random.randint(-3, 3)))


def send(path: str, payload: Dict) -> tuple:
    """Envía un mensaje y retorna (success, response_time, status)."""
    start_time = time.time()
    try:
        response = requests.post(f"{BASE_URL}{path}", json=payload, timeout=5)
        response_time = time.time() - start_time
        if response.status_code in (200, 202):
            return (True, response_time, response.json().get("status"))
        return (False, response_time, f"Status {response.status_code}: {response.text}")
    except requests.RequestException as e:
        return (False, time.time() - start_time, str(e))


def simulate(user_id: str, seconds: int, interval: float, start_bpm: int, noise: float, verbose: bool):
    print(f"\n🚀 Simulando {seconds}s de lecturas para {user_id} (cada {interval}s)...")
    results = {"written": 0, "unchanged": 0, "dropped": 0, "errors": 0}

    send("/companion/messages", {"type": "heartRateStart"})
    bpm = start_bpm
    deadline = time.time() + seconds
    while time.time() < deadline:
        bpm = next_bpm(bpm)
        if random.random() < noise:
            # lectura ruidosa del sensor: fuera de rango o marcada inválida
            payload = random.choice([
                heart_rate_message(user_id, random.randint(221, 260)),
                heart_rate_message(user_id, bpm, is_valid_reading=False),
            ])
        else:
            payload = heart_rate_message(user_id, bpm)

        success, resp_time, status = send("/companion/messages", payload)
        if success:
            results[status] = results.get(status, 0) + 1
            if verbose:
                print(f"✅ {payload['data']['heartNum']} bpm -> {status} ({resp_time:.3f}s)")
        else:
            results["errors"] += 1
            print(f"❌ Error: {status}")
        time.sleep(interval)

    send("/companion/messages", {"type": "heartRateStop"})

    print(f"\n📊 Estadísticas:")
    for key, value in results.items():
        print(f"   {key}: {value}")


def main():
    global BASE_URL

    parser = argparse.ArgumentParser(description="Simulador de companion para el bridge de heartshare")
    parser.add_argument("--user", type=str, default="user_1", help="userId del emisor (default: user_1)")
    parser.add_argument("--seconds", type=int, default=30, help="Duración de la simulación (default: 30)")
    parser.add_argument("--interval", type=float, default=1.0, help="Segundos entre lecturas (default: 1.0)")
    parser.add_argument("--bpm", type=int, default=72, help="BPM inicial (default: 72)")
    parser.add_argument("--noise", type=float, default=0.05, help="Probabilidad de lectura inválida (default: 0.05)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Mostrar detalles de cada mensaje")
    parser.add_argument("--url", type=str, default=BASE_URL, help=f"URL base del bridge (default: {BASE_URL})")

    args = parser.parse_args()
    BASE_URL = args.url

    print(f"🌐 Conectando a: {BASE_URL}")
    try:
        requests.get(f"{BASE_URL}/health", timeout=2)
        print("✅ Bridge disponible")
    except requests.RequestException as e:
        print(f"❌ No se puede conectar al bridge: {e}")
        return

    simulate(args.user, args.seconds, args.interval, args.bpm, args.noise, args.verbose)


if __name__ == "__main__":
    main()
