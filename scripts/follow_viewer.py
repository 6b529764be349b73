#!/usr/bin/env python3
"""
Viewer de consola: se suscribe a los heartbeats de uno o más usuarios en
Redis y hace "latir" cada tarjeta con un PulseScheduler (haptics por log).
"""
import argparse
import os
import signal
import sys
import threading

# Agregar el directorio raíz al PYTHONPATH para que pueda encontrar el paquete 'heartshare'
script_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(script_dir)
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from heartshare.app import connect_redis
from heartshare.config import HEARTBEAT_VALIDITY_SECONDS, REDIS_URL
from heartshare.feed import HeartbeatFeed
from heartshare.live_store import RedisLiveStore
from heartshare.logger import get_logger, setup_logging
from heartshare.ports import LoggingHapticSink
from heartshare.pulse import PulseScheduler
from heartshare.scheduler import Scheduler

setup_logging()
logger = get_logger(__name__)

_stop = threading.Event()


def _signal_handler(sig, frame):
    logger.info(f"Signal {sig} received, shutting down viewer gracefully...")
    _stop.set()


def watch(user_ids, window: float):
    scheduler = Scheduler(name="ViewerScheduler")
    store = RedisLiveStore(connect_redis(REDIS_URL), post=scheduler.call_soon)
    feed = HeartbeatFeed(store, scheduler.clock, validity_window_seconds=window)
    pulses = {}
    subscriptions = []

    def on_heartbeat(user_id):
        pulse = pulses[user_id]

        def handle(heartbeat):
            if heartbeat is None:
                logger.info(f"[{user_id}] sin lectura actual")
                pulse.stop()
                return
            logger.info(f"[{user_id}] {heartbeat.bpm} bpm ({heartbeat.timestamp.isoformat()})")
            pulse.start(heartbeat.bpm)

        return handle

    scheduler.start()
    for user_id in user_ids:
        pulses[user_id] = PulseScheduler(scheduler, LoggingHapticSink(user_id))
        subscriptions.append(scheduler.submit(feed.subscribe, user_id, on_heartbeat(user_id)).result(5))
    logger.info(f"Viendo {len(user_ids)} usuarios, ventana de validez {window}s")

    try:
        _stop.wait()
    finally:
        for subscription in subscriptions:
            scheduler.submit(subscription.unsubscribe).result(5)
        for pulse in pulses.values():
            scheduler.submit(pulse.stop).result(5)
        scheduler.stop()
        store.close()


def main():
    parser = argparse.ArgumentParser(description="Viewer de heartbeats en vivo")
    parser.add_argument("user_ids", nargs="+", help="userIds a seguir")
    parser.add_argument("--window", type=float, default=HEARTBEAT_VALIDITY_SECONDS,
                        help=f"Ventana de validez en segundos (default: {HEARTBEAT_VALIDITY_SECONDS})")
    args = parser.parse_args()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)
    watch(args.user_ids, args.window)


if __name__ == "__main__":
    main()
