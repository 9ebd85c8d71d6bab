import logging

import pytest

from health_wrapper.readiness import ReadinessGate, ReadinessState


@pytest.fixture
def gate():
    return ReadinessGate(markers=["listening", "started", "bound"])


def test_starts_not_ready(gate):
    assert gate.state is ReadinessState.NOT_READY
    assert gate.is_ready() is False


@pytest.mark.parametrize(
    "line",
    [
        "[gateway] listening on ws://127.0.0.1:18789",
        "server started in 120ms",
        "socket bound to loopback",
    ],
)
def test_marker_flips_to_ready(gate, line):
    assert gate.observe(line) is True
    assert gate.is_ready() is True
    assert gate.state is ReadinessState.READY


def test_unrelated_output_keeps_not_ready(gate):
    assert gate.observe("loading plugins") is False
    assert gate.observe("") is False
    assert gate.is_ready() is False


def test_markers_are_case_sensitive(gate):
    assert gate.observe("LISTENING on 18789") is False
    assert gate.observe("Started") is False
    assert gate.is_ready() is False


def test_transition_is_logged_once(gate, caplog):
    logger = logging.getLogger("uvicorn.error")
    orig_propagate = logger.propagate
    logger.propagate = True
    try:
        with caplog.at_level(logging.INFO, logger="uvicorn.error"):
            gate.observe("listening")
            gate.observe("listening again")
            gate.observe("started")
    finally:
        logger.propagate = orig_propagate

    ready_logs = [r for r in caplog.records if "detected as ready" in r.getMessage()]
    assert len(ready_logs) == 1


def test_never_reverts(gate):
    gate.observe("bound")
    for line in ["crash", "stopped", "error: not listening"]:
        gate.observe(line)
        assert gate.is_ready() is True


def test_default_markers_come_from_vars(monkeypatch):
    monkeypatch.setattr(
        "health_wrapper.readiness.gate.GATEWAY_READY_MARKERS", ["ready-now"]
    )
    gate = ReadinessGate()
    assert gate.observe("listening") is False
    assert gate.observe("ready-now") is True
