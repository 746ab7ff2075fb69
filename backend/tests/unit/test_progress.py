import json

import pytest

from app.core.services.progress import EventKind, ProgressNotifier


def test_frame_format():
    notifier = ProgressNotifier(batch_id="b1")
    notifier.file_error("adams.geojson", "payload is not a JSON feature document")
    notifier.complete(1, 0, 1)

    frames = list(notifier.frames())
    head, data, blank, _ = frames[0].split("\n")
    assert head == "event: file_error"
    assert blank == ""
    assert json.loads(data[len("data: "):]) == {
        "batch_id": "b1",
        "filename": "adams.geojson",
        "error": "payload is not a JSON feature document",
    }
    assert frames[-1].startswith("event: complete\n")


def test_nothing_after_complete():
    notifier = ProgressNotifier()
    notifier.start(0)
    notifier.complete(0, 0, 0)
    with pytest.raises(RuntimeError):
        notifier.processing("late.geojson", 0)
    assert [e.kind for e in notifier.events(timeout=1)] == [EventKind.START, EventKind.COMPLETE]
