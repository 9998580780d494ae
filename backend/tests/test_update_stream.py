import asyncio
import json

import pytest

from sitecheck.schemas.check import RunResult, StageId, StreamEvent
from sitecheck.services.update_stream import StreamClosedError, UpdateStream
from sitecheck.utils.ndjson import NDJSONDecoder, encode_event


@pytest.mark.asyncio
async def test_events_arrive_in_order_and_end_with_final():
    stream = UpdateStream()
    result = RunResult.new()

    stream.publish(result)
    result.begin_stage(StageId.DNS)
    stream.publish(result)
    result.finish_failure("stopped")
    stream.close(result)

    events = [event async for event in stream]

    assert [event.type for event in events] == ["update", "update", "final"]
    assert events[0].data.stage(StageId.DNS).status.value == "idle"
    assert events[1].data.stage(StageId.DNS).status.value == "loading"
    assert stream.closed
    assert stream.final_event is events[-1]


@pytest.mark.asyncio
async def test_published_snapshots_do_not_track_later_mutation():
    stream = UpdateStream()
    result = RunResult.new()
    event = stream.publish(result)

    result.begin_stage(StageId.DNS)

    assert event.data.stage(StageId.DNS).status.value == "idle"


def test_nothing_may_follow_the_final_event():
    stream = UpdateStream()
    result = RunResult.new()
    result.finish_failure("done")
    stream.close(result)

    with pytest.raises(StreamClosedError):
        stream.close(result)
    with pytest.raises(StreamClosedError):
        stream.publish(RunResult.new())
    assert stream.published_count == 1


def test_final_and_update_events_require_matching_completion():
    stream = UpdateStream()
    complete = RunResult.new()
    complete.finish_failure("done")

    with pytest.raises(ValueError):
        stream.publish(complete)
    with pytest.raises(ValueError):
        stream.close(RunResult.new())


@pytest.mark.asyncio
async def test_consumer_waits_for_producer():
    stream = UpdateStream()
    result = RunResult.new()

    async def produce():
        await asyncio.sleep(0.01)
        stream.publish(result)
        await asyncio.sleep(0.01)
        result.finish_failure("late")
        stream.close(result)

    producer = asyncio.create_task(produce())
    events = [event async for event in stream]
    await producer

    assert [event.type for event in events] == ["update", "final"]


def test_encode_event_is_single_json_line():
    result = RunResult.new()
    line = encode_event(StreamEvent(type="update", data=result))

    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert json.loads(line)["data"]["isComplete"] is False


def test_decoder_buffers_partial_lines_across_chunks():
    decoder = NDJSONDecoder()
    payload = b'{"type":"update","n":1}\n{"type":"final","n":2}\n'

    assert decoder.feed(payload[:10]) == []
    assert decoder.pending
    first = decoder.feed(payload[10:30])
    assert first == [{"type": "update", "n": 1}]
    assert decoder.feed(payload[30:]) == [{"type": "final", "n": 2}]
    assert not decoder.pending


def test_decoder_handles_multibyte_characters_split_between_reads():
    decoder = NDJSONDecoder()
    encoded = json.dumps({"name": "Ünïcode"}, ensure_ascii=False).encode("utf-8") + b"\n"
    split = encoded.index("Ü".encode("utf-8")) + 1

    assert decoder.feed(encoded[:split]) == []
    assert decoder.feed(encoded[split:]) == [{"name": "Ünïcode"}]


def test_decoder_skips_blank_lines_and_flushes_trailing_object():
    decoder = NDJSONDecoder()

    assert decoder.feed('\n\n{"a":1}\n\n{"b":2}') == [{"a": 1}]
    assert decoder.flush() == [{"b": 2}]
    assert decoder.flush() == []


def test_decoder_rejects_malformed_lines():
    decoder = NDJSONDecoder()
    with pytest.raises(ValueError):
        decoder.feed(b"{not json}\n")
    with pytest.raises(ValueError):
        NDJSONDecoder().feed(b"[1, 2]\n")
