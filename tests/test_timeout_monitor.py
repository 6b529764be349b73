"""
Pruebas del watchdog de frecuencia cardíaca local.
"""
from heartshare.timeout_monitor import MonitorState


def test_sample_moves_to_live(monitor):
    monitor.record_sample(72)
    assert monitor.state == MonitorState.LIVE
    assert monitor.bpm == 72


def test_timeout_after_ten_seconds_without_samples(scheduler, monitor):
    reasons = []
    monitor.idle.subscribe(reasons.append)
    monitor.start()
    monitor.record_sample(72)

    scheduler.advance(9)
    assert monitor.state == MonitorState.LIVE
    assert monitor.bpm == 72

    scheduler.advance(1)
    assert monitor.state == MonitorState.IDLE
    assert monitor.bpm == 0
    assert reasons == ["timeout"]


def test_new_sample_restarts_timeout(scheduler, monitor):
    monitor.start()
    monitor.record_sample(72)
    scheduler.advance(5)
    monitor.record_sample(74)
    scheduler.advance(9)
    assert monitor.state == MonitorState.LIVE
    scheduler.advance(1)
    assert monitor.state == MonitorState.IDLE


def test_explicit_reset_is_immediate(monitor):
    values = []
    reasons = []
    monitor.current_bpm.subscribe(values.append)
    monitor.idle.subscribe(reasons.append)
    monitor.record_sample(72)
    monitor.reset("stop")
    assert monitor.state == MonitorState.IDLE
    assert values == [72, 0]
    assert reasons == ["stop"]


def test_idle_stays_idle(scheduler, monitor):
    reasons = []
    monitor.idle.subscribe(reasons.append)
    monitor.start()
    scheduler.advance(30)
    assert monitor.state == MonitorState.IDLE
    assert reasons == []


def test_stop_cancels_tick(scheduler, monitor):
    monitor.start()
    monitor.start()
    monitor.record_sample(72)
    monitor.stop()
    scheduler.advance(30)
    assert monitor.state == MonitorState.LIVE
    assert scheduler.pending_count() == 0
