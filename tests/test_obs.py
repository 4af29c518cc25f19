import pytest

from docrag import obs
from docrag.obs import Trace, span


class RecordingSpan:
    def __init__(self, log, name, **kwargs):
        self.log = log
        self.log.append(("start", name, kwargs))

    def start_span(self, name, **kwargs):
        return RecordingSpan(self.log, name, **kwargs)

    def start_generation(self, name, **kwargs):
        return RecordingSpan(self.log, name, **kwargs)

    def update(self, **kwargs):
        self.log.append(("update", kwargs))

    def end(self):
        self.log.append(("end",))


class RecordingClient:
    def __init__(self):
        self.log = []

    def start_span(self, name, **kwargs):
        return RecordingSpan(self.log, name, **kwargs)


def test_span_is_transparent_without_a_tracer_provider():
    with span("retrieve", {"tenant_id": "acme", "skipped": None}):
        value = 1 + 1
    assert value == 2

    with pytest.raises(KeyError):
        with span("retrieve"):
            raise KeyError("boom")


def test_trace_is_a_no_op_when_unconfigured(monkeypatch):
    monkeypatch.setattr(obs, "_init_langfuse", lambda: None)
    trace = Trace("ask", input={"question": "q"})
    assert not trace.enabled
    trace.event("cache_hit", {"similarity": 1.0})
    trace.generation("answer", prompt="q", output="a")
    trace.end(output={"used_cache": True})


def test_trace_records_events_and_closes_once(monkeypatch):
    client = RecordingClient()
    monkeypatch.setattr(obs, "_init_langfuse", lambda: client)

    trace = Trace("ask", input={"question": "q"})
    trace.event("retrieval_result", {"num_results": 2})
    trace.generation("answer", prompt="q", output="a", model="gen")
    trace.end(output={"used_cache": False})
    trace.end(output={"used_cache": False})

    names = [entry[1] for entry in client.log if entry[0] == "start"]
    assert names == ["ask", "retrieval_result", "answer"]
    assert client.log[-2] == ("update", {"output": {"used_cache": False}})
    assert client.log.count(("end",)) == 3


def test_trace_backend_errors_are_dropped(monkeypatch):
    class BrokenClient:
        def start_span(self, name, **kwargs):
            raise ConnectionError("langfuse unreachable")

    monkeypatch.setattr(obs, "_init_langfuse", lambda: BrokenClient())
    trace = Trace("ask")
    assert not trace.enabled
    trace.end()
