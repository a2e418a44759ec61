import asyncio
from dataclasses import replace

import pytest

from conftest import (
    EOF_LINE,
    REFERENCE_HASH,
    START_ADDRESS,
    filler,
    hex_line,
    makecode_lines,
    makecode_stream,
    segment_line,
)
from pf_tool.ble_transport.packets import END_OF_FLASH_COMMAND, PacketState
from pf_tool.errors import LinkError, MalformedRecord, NoSegmentRecord
from pf_tool.firmware.engine import FlashEngine, FlashResult, FlashState, partial_flash
from pf_tool.firmware.simulate import SimMicrobit
from pf_tool.hexfile.document import HexDocument


def run_engine(link, document, timings, cancel=None):
    progress = []

    async def scenario():
        engine = FlashEngine(link, timings, progress.append, cancel)
        outcome = await engine.run(document)
        return engine, outcome

    engine, outcome = asyncio.run(scenario())
    return engine, outcome, progress


def compatible_sim(**kwargs):
    return SimMicrobit(dal_hash=REFERENCE_HASH, code_start=START_ADDRESS, **kwargs)


def test_happy_path(makecode_doc, payload_records, fast_timings):
    sim = compatible_sim()
    engine, outcome, progress = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    assert outcome.ok
    assert engine.state is FlashState.SUCCEEDED
    assert outcome.packets_sent == 8
    assert sim.ended

    expected = makecode_stream(payload_records)
    assert sim.read(START_ADDRESS, len(expected)) == expected

    assert progress[0] == 0
    assert progress[-1] == 100
    assert progress == sorted(progress)
    # 0, два окна, 100
    assert len(progress) == 4


def test_address_travels_in_first_two_packets(makecode_doc, fast_timings):
    sim = compatible_sim()
    run_engine(sim, makecode_doc, fast_timings)

    sent = sim.flash_packets
    assert sent[0].offset == START_ADDRESS & 0xFFFF
    assert sent[1].offset == (START_ADDRESS >> 16) & 0xFFFF
    assert all(p.offset == 0 for p in sent[2:])
    assert [p.packet_number for p in sent] == list(range(len(sent)))


def test_packets_never_span_records(fast_timings):
    records = [filler(20, 1), filler(5, 2), filler(16, 3)]
    doc = HexDocument.parse(makecode_lines(records))
    sim = compatible_sim()
    _, outcome, _ = run_engine(sim, doc, fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    sizes = [len(p.payload) for p in sim.flash_packets]
    assert sizes == [16, 16, 16, 4, 5, 16]


def test_short_final_window(fast_timings):
    # устройство подтверждает только полные окна; хвост закрывает EndOfFlash
    doc = HexDocument.parse(makecode_lines([filler(16, 1)]))
    sim = compatible_sim()
    _, outcome, progress = run_engine(sim, doc, fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    assert outcome.packets_sent == 3
    assert sim.acks_sent == [PacketState.COMPLETE]
    assert sim.read(START_ADDRESS, 48) == makecode_stream([filler(16, 1)])
    assert progress[-1] == 100


def test_tail_after_full_windows(fast_timings):
    records = [filler(32, 1), filler(32, 2), filler(16, 3)]
    sim = compatible_sim()
    _, outcome, progress = run_engine(sim, HexDocument.parse(makecode_lines(records)), fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    assert outcome.packets_sent == 7
    assert sim.received[-1] == bytes([END_OF_FLASH_COMMAND])
    assert sim.acks_sent == [PacketState.SENT, PacketState.COMPLETE]
    expected = makecode_stream(records)
    assert sim.read(START_ADDRESS, len(expected)) == expected
    assert progress == sorted(progress)
    assert progress[-1] == 100


def test_retransmit_of_short_final_window(fast_timings):
    records = [filler(32, 1), filler(32, 2), filler(16, 3)]
    sim = compatible_sim(idle_ack=0.01, retransmit_windows={1})
    timings = replace(fast_timings, drain_delay=0.1)
    _, outcome, _ = run_engine(sim, HexDocument.parse(makecode_lines(records)), timings)

    assert outcome.result is FlashResult.SUCCEEDED
    sent = sim.flash_packets
    assert len(sent) == 10
    assert [(p.offset, p.payload) for p in sent[7:10]] == [(p.offset, p.payload) for p in sent[4:7]]
    assert [p.packet_number for p in sent[7:10]] == [7, 8, 9]
    assert sim.acks_sent == [PacketState.SENT, PacketState.RETRANSMIT, PacketState.SENT, PacketState.COMPLETE]
    expected = makecode_stream(records)
    assert sim.read(START_ADDRESS, len(expected)) == expected


def test_progress_ignores_records_after_payload(payload_records, fast_timings):
    trailing = [hex_line(0x0100 + 0x10 * i, 0, filler(16, 50 + i)) for i in range(10)]
    doc = HexDocument.parse(makecode_lines(payload_records) + trailing)
    sim = compatible_sim()
    _, outcome, progress = run_engine(sim, doc, fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    assert outcome.packets_sent == 8
    assert progress == [0, 50, 99, 100]


def test_empty_data_records_are_skipped(fast_timings):
    doc = HexDocument.parse(makecode_lines([b"", filler(16, 1)]))
    sim = compatible_sim()
    _, outcome, _ = run_engine(sim, doc, fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    assert all(p.payload for p in sim.flash_packets)


def test_waiting_acks_are_ignored(makecode_doc, fast_timings):
    sim = compatible_sim(waiting_before_ack=True)
    _, outcome, _ = run_engine(sim, makecode_doc, fast_timings)
    assert outcome.result is FlashResult.SUCCEEDED


def test_retransmit_resends_same_window(makecode_doc, payload_records, fast_timings):
    sim = compatible_sim(retransmit_windows={1})
    _, outcome, _ = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    sent = sim.flash_packets
    assert len(sent) == 12
    for first, again in zip(sent[4:8], sent[8:12]):
        assert again.payload == first.payload
        assert again.offset == first.offset
    # номер пакета растёт и на повторах
    assert [p.packet_number for p in sent[8:12]] == [8, 9, 10, 11]

    expected = makecode_stream(payload_records)
    assert sim.read(START_ADDRESS, len(expected)) == expected


def test_retransmit_of_first_window_repeats_address(makecode_doc, payload_records, fast_timings):
    sim = compatible_sim(retransmit_windows={0})
    _, outcome, _ = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    sent = sim.flash_packets
    assert [(p.offset, p.payload) for p in sent[4:8]] == [(p.offset, p.payload) for p in sent[0:4]]
    expected = makecode_stream(payload_records)
    assert sim.read(START_ADDRESS, len(expected)) == expected


def test_hash_mismatch_requires_fallback(makecode_doc, fast_timings):
    sim = SimMicrobit(dal_hash=bytes(8), code_start=START_ADDRESS)
    engine, outcome, progress = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.FALLBACK_REQUIRED
    assert engine.state is FlashState.FALLBACK_REQUIRED
    assert "hash" in outcome.reason
    assert sim.flash_packets == []
    assert progress == [0]


def test_missing_runtime_region_requires_fallback(makecode_doc, fast_timings):
    sim = compatible_sim(silent_regions={1})
    _, outcome, _ = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.FALLBACK_REQUIRED
    assert sim.flash_packets == []
    assert sorted(outcome.regions) == [0, 2]


def test_code_start_mismatch_requires_fallback(makecode_doc, fast_timings):
    sim = SimMicrobit(dal_hash=REFERENCE_HASH, code_start=START_ADDRESS + 0x1000)
    _, outcome, _ = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.FALLBACK_REQUIRED
    assert "address" in outcome.reason
    assert sim.flash_packets == []


def test_missing_code_region_requires_fallback(makecode_doc, fast_timings):
    sim = compatible_sim(silent_regions={2})
    _, outcome, _ = run_engine(sim, makecode_doc, fast_timings)
    assert outcome.result is FlashResult.FALLBACK_REQUIRED


def test_no_marker_means_no_device_interaction(fast_timings):
    doc = HexDocument.parse([segment_line(3), hex_line(0, 0, filler(32, 1)), EOF_LINE])
    sim = compatible_sim()
    _, outcome, _ = run_engine(sim, doc, fast_timings)

    assert outcome.result is FlashResult.FALLBACK_REQUIRED
    assert outcome.location is None
    assert sim.received == []


def test_hash_pointer_means_no_device_interaction(fast_timings):
    marker = bytes.fromhex("FE307F59") + bytes(8) + bytes.fromhex("9DD7B1C1")
    doc = HexDocument.parse([
        segment_line(6),
        hex_line(0x00, 0, filler(16, 1)),
        hex_line(0x10, 0, bytes.fromhex("0002") + filler(14, 2)),
        hex_line(0x20, 0, filler(16, 3)),
        hex_line(0x30, 0, marker),
        EOF_LINE,
    ])
    sim = compatible_sim()
    _, outcome, _ = run_engine(sim, doc, fast_timings)

    assert outcome.result is FlashResult.FALLBACK_REQUIRED
    assert sim.received == []


def test_micropython_image(fast_timings):
    upy_hash = bytes.fromhex("1111222233334444")
    marker = bytes.fromhex("FE307F59") + bytes(8) + bytes.fromhex("9DD7B1C1")
    records = [filler(16, 1), upy_hash + filler(8, 2), filler(16, 3), marker]
    lines = [segment_line(6)] + [hex_line(0x10 * i, 0, r) for i, r in enumerate(records)] + [EOF_LINE]
    doc = HexDocument.parse(lines)
    # адрес региона 2 для MicroPython не сверяется
    sim = SimMicrobit(dal_hash=upy_hash, code_start=0x00070000)
    _, outcome, _ = run_engine(sim, doc, fast_timings)

    assert outcome.result is FlashResult.SUCCEEDED
    assert sim.read(0x00060000, 64) == b"".join(records)


def test_ack_timeout_fails_and_stops_sending(makecode_doc, fast_timings):
    sim = compatible_sim(ack_limit=1)
    engine, outcome, _ = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.FAILED
    assert engine.state is FlashState.FAILED
    assert "acknowledgement" in outcome.reason
    assert outcome.packets_sent == 8
    assert len(sim.flash_packets) == 8
    assert bytes([END_OF_FLASH_COMMAND]) not in sim.received


def test_attempt_timeout(makecode_doc, fast_timings):
    sim = compatible_sim(latency=0.05)
    timings = replace(fast_timings, attempt_timeout=0.01)
    _, outcome, _ = run_engine(sim, makecode_doc, timings)

    assert outcome.result is FlashResult.FAILED
    assert "timed out" in outcome.reason
    assert outcome.packets_sent == 4


def test_missing_completion_fails(makecode_doc, fast_timings):
    sim = compatible_sim(complete_on_end=False)
    _, outcome, progress = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.FAILED
    assert sim.ended
    assert 100 not in progress


def test_cancel_before_streaming(makecode_doc, fast_timings):
    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        sim = compatible_sim()
        outcome = await FlashEngine(sim, fast_timings, cancel=cancel).run(makecode_doc)
        return sim, outcome

    sim, outcome = asyncio.run(scenario())
    assert outcome.result is FlashResult.FAILED
    assert outcome.reason == "cancelled"
    assert sim.flash_packets == []


def test_cancel_finishes_current_window(makecode_doc, fast_timings):
    async def scenario():
        cancel = asyncio.Event()
        seen = []

        def on_progress(pct):
            seen.append(pct)
            if len(seen) == 2:  # первое окно подтверждено
                cancel.set()

        sim = compatible_sim()
        outcome = await FlashEngine(sim, fast_timings, on_progress, cancel).run(makecode_doc)
        return sim, outcome

    sim, outcome = asyncio.run(scenario())
    assert outcome.result is FlashResult.FAILED
    assert outcome.reason == "cancelled"
    assert len(sim.flash_packets) == 4


def test_malformed_ack_fails(makecode_doc, fast_timings):
    class ShortAcks(SimMicrobit):
        def _ack(self, state):
            self._notify(b"\x01")

    sim = ShortAcks(dal_hash=REFERENCE_HASH, code_start=START_ADDRESS)
    _, outcome, _ = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.FAILED
    assert len(sim.flash_packets) == 4


def test_unknown_ack_state_fails(makecode_doc, fast_timings):
    class OddAcks(SimMicrobit):
        def _ack(self, state):
            self._notify(b"\x01\x42")

    _, outcome, _ = run_engine(OddAcks(dal_hash=REFERENCE_HASH, code_start=START_ADDRESS),
                               makecode_doc, fast_timings)
    assert outcome.result is FlashResult.FAILED


def test_link_error_fails(makecode_doc, fast_timings):
    class BrokenLink(SimMicrobit):
        async def write_command(self, data):
            if data[0] == 0x01 and len(self.flash_packets) >= 2:
                raise LinkError("write failed: disconnected")
            await super().write_command(data)

    sim = BrokenLink(dal_hash=REFERENCE_HASH, code_start=START_ADDRESS)
    _, outcome, _ = run_engine(sim, makecode_doc, fast_timings)

    assert outcome.result is FlashResult.FAILED
    assert "disconnected" in outcome.reason


def test_engine_can_run_again_after_failure(makecode_doc, fast_timings):
    async def scenario():
        sim = compatible_sim(ack_limit=0)
        engine = FlashEngine(sim, fast_timings)
        first = await engine.run(makecode_doc)
        sim.ack_limit = None
        second = await engine.run(makecode_doc)
        return first, second, sim

    first, second, sim = asyncio.run(scenario())
    assert first.result is FlashResult.FAILED
    assert second.result is FlashResult.SUCCEEDED
    assert len(sim._callbacks) == 0


def test_partial_flash_parses_before_touching_device(fast_timings):
    sim = compatible_sim()
    with pytest.raises(MalformedRecord):
        asyncio.run(partial_flash(b"not a hex image\n", sim, fast_timings))
    assert sim.received == []


def test_missing_segment_record_is_a_parse_error(fast_timings):
    lines = makecode_lines([filler(16, 1)])[1:]  # без записи типа 4
    sim = compatible_sim()
    with pytest.raises(NoSegmentRecord):
        asyncio.run(partial_flash("\n".join(lines).encode(), sim, fast_timings))
    assert sim.received == []


def test_partial_flash_from_file(tmp_path, payload_records, fast_timings):
    path = tmp_path / "program.hex"
    path.write_text("\n".join(makecode_lines(payload_records)) + "\n")
    sim = compatible_sim()
    outcome = asyncio.run(partial_flash(path, sim, fast_timings))
    assert outcome.result is FlashResult.SUCCEEDED
