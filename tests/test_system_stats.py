import datetime

from ruleflow.services.system_stats import SystemMonitor

T0 = datetime.datetime(2026, 10, 18, 12, 0, tzinfo=datetime.timezone.utc)


def _monitor(values, window_minutes=10):
    readings = iter(values)
    return SystemMonitor(
        window_minutes=window_minutes,
        cpu_reader=lambda: next(readings),
        storage_reader=lambda: 42.123,
    )


def test_sample_reads_storage_and_cpu():
    snapshot = _monitor([12.5]).sample(T0)
    assert snapshot.storage_percent == 42.12
    assert snapshot.cpu_percent == 12.5
    assert snapshot.history_start == T0


def test_samples_are_trimmed_to_window():
    monitor = _monitor([90.0] * 20, window_minutes=5)
    for minute in range(12):
        monitor.sample(T0 + datetime.timedelta(minutes=minute))
    samples = monitor.samples()
    assert len(samples) == 6
    assert samples[0][0] == T0 + datetime.timedelta(minutes=6)


def test_sustained_load_over_monitored_window():
    monitor = _monitor([95.0] * 7, window_minutes=10)
    snapshot = None
    for minute in range(7):
        snapshot = monitor.sample(T0 + datetime.timedelta(minutes=minute))
    assert snapshot.cpu_sustained(80, 5)
    assert not snapshot.cpu_sustained(80, 10)
    assert not snapshot.cpu_sustained(99, 5)


def test_gap_between_samples_restarts_history():
    monitor = SystemMonitor(
        window_minutes=30,
        cpu_reader=lambda: 95.0,
        storage_reader=lambda: 10.0,
        max_gap_sec=300,
    )
    for minute in range(10):
        monitor.sample(T0 + datetime.timedelta(minutes=minute))
    later = T0 + datetime.timedelta(minutes=40)
    snapshot = monitor.sample(later)
    assert snapshot.history_start == later
    assert len(monitor.samples()) == 1
    assert not snapshot.cpu_sustained(80, 5)
