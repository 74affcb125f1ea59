from stickerwatch.scraper import logging_utils


def test_scraper_event_label_and_phase(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._scraper_event("state", phase="retry_decision", kind="capped")

    assert events
    line = events[-1]
    assert line.startswith("[SCRAPER][STATE]")
    assert "phase='retry_decision'" in line
    assert "kind='capped'" in line


def test_phase_alone_becomes_label(monkeypatch):
    events: list[str] = []
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: events.append(msg))

    logging_utils._scraper_event(phase="upload", sent=3)

    assert events[-1] == "[SCRAPER][UPLOAD] sent=3"


def test_listeners_receive_events_until_removed(monkeypatch):
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: None)
    received: list[tuple[str, dict]] = []

    def _listener(label, fields):
        received.append((label, fields))

    logging_utils.add_event_listener(_listener)
    logging_utils.add_event_listener(_listener)
    try:
        logging_utils._scraper_event("BACKOFF", kind="rate_limit", delay_ms=630000)
    finally:
        logging_utils.remove_event_listener(_listener)
    logging_utils._scraper_event("backoff", kind="reset")

    assert received == [("backoff", {"kind": "rate_limit", "delay_ms": 630000})]


def test_failing_listener_does_not_break_emitter(monkeypatch):
    monkeypatch.setattr(logging_utils, "log_line", lambda msg: None)
    received: list[str] = []

    def _broken(label, fields):
        raise RuntimeError("listener bug")

    def _working(label, fields):
        received.append(label)

    logging_utils.add_event_listener(_broken)
    logging_utils.add_event_listener(_working)
    try:
        logging_utils._scraper_event("progress", index=1)
    finally:
        logging_utils.remove_event_listener(_broken)
        logging_utils.remove_event_listener(_working)

    assert received == ["progress"]
