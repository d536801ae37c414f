from __future__ import annotations

import random

import pytest

from presence_probe.navigation import ENTRY_POSITION, RoomNavigator, RoomPresence
from presence_probe.quotes import QuoteCorpus
from presence_probe.scheduler import ProbeScheduler
from presence_probe.session import EXIT_FAILURE, EXIT_OK, Phase, Session

NOW = 1_700_000_000.0


def build(config, transport, corpus=None, lobby="lobby"):
    session = Session(name=config.user, phase=Phase.CONNECTED, member_id=3, lobby_url=lobby)
    presence = RoomPresence()
    rng = random.Random(11)
    navigator = RoomNavigator(session, transport, presence, rng)
    scheduler = ProbeScheduler(config, session, transport, presence, navigator, corpus, rng, clock=lambda: NOW)
    return session, scheduler


async def run_ticks(scheduler, session, limit=100):
    ticks = 0
    while session.phase is Phase.CONNECTED and ticks < limit:
        await scheduler.tick()
        ticks += 1
    return ticks


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [0, 1, 3, 7])
async def test_exactly_count_probes_then_success(make_config, transport, count):
    session, scheduler = build(make_config(loop_count=count), transport)
    ticks = await run_ticks(scheduler, session)
    assert len(transport.named("whisper")) == count
    assert session.stats.probes_sent == count
    assert session.exit_code == EXIT_OK
    assert ticks == count + 1


@pytest.mark.asyncio
async def test_probe_goes_to_self_with_sized_filler(make_config, transport):
    session, scheduler = build(make_config(loop_count=3, message_size=10), transport)
    await run_ticks(scheduler, session)
    for member_id, text in transport.named("whisper"):
        assert member_id == 3
        fields = text.split("\t")
        assert fields[0] == str(int(NOW))
        assert fields[2] == "abcdefghij"


@pytest.mark.asyncio
async def test_room_entry_happens_once_before_first_probe(make_config, transport, tmp_path):
    avatar = tmp_path / "av1.gif"
    avatar.write_bytes(b"GIF89a")
    session, scheduler = build(make_config(loop_count=5, room="hall", avatar_file=avatar), transport)
    await run_ticks(scheduler, session)
    names = [name for name, _ in transport.calls]
    assert names[:3] == ["navigate", "set_face", "whisper"]
    assert transport.named("navigate") == [("hall", ENTRY_POSITION, 1)]
    assert transport.named("set_face") == [(b"GIF89a",)]


@pytest.mark.asyncio
async def test_lobby_is_used_without_a_room(make_config, transport):
    session, scheduler = build(make_config(loop_count=1), transport, lobby="vp://lobby")
    await run_ticks(scheduler, session)
    assert transport.named("navigate")[0][0] == "vp://lobby"


@pytest.mark.asyncio
async def test_missing_avatar_is_skipped(make_config, transport, tmp_path):
    session, scheduler = build(make_config(loop_count=2, avatar_file=tmp_path / "none.gif"), transport)
    await run_ticks(scheduler, session)
    assert transport.named("set_face") == []
    assert session.exit_code == EXIT_OK


@pytest.mark.asyncio
async def test_avatar_apply_failure_is_skipped(make_config, make_transport, tmp_path):
    avatar = tmp_path / "av1.gif"
    avatar.write_bytes(b"GIF89a")
    transport = make_transport(fail_on={"set_face"})
    session, scheduler = build(make_config(loop_count=2, avatar_file=avatar), transport)
    await run_ticks(scheduler, session)
    assert session.stats.probes_sent == 2
    assert session.exit_code == EXIT_OK


@pytest.mark.asyncio
async def test_whisper_failure_is_fatal(make_config, make_transport):
    transport = make_transport(fail_on={"whisper"})
    session, scheduler = build(make_config(loop_count=3), transport)
    await run_ticks(scheduler, session)
    assert session.phase is Phase.DISCONNECTED
    assert session.exit_code == EXIT_FAILURE
    assert session.stats.probes_sent == 0


@pytest.mark.asyncio
async def test_every_probe_moves_the_avatar(make_config, transport):
    session, scheduler = build(make_config(loop_count=4), transport)
    await run_ticks(scheduler, session)
    assert len(transport.named("move")) == 4


@pytest.mark.asyncio
async def test_ambient_speech_every_fifth_tick(make_config, transport):
    corpus = QuoteCorpus(["Yow!", "Are we having fun yet?"])
    session, scheduler = build(make_config(loop_count=12, talk_every=5), transport, corpus=corpus)
    for _ in range(4):
        await scheduler.tick()
    assert transport.named("chat") == []
    await scheduler.tick()
    assert len(transport.named("chat")) == 1
    await run_ticks(scheduler, session)
    said = [args[0] for args in transport.named("chat")]
    assert len(said) == 2
    assert set(said) <= {"Yow!", "Are we having fun yet?"}


@pytest.mark.asyncio
async def test_empty_corpus_keeps_quiet(make_config, transport):
    session, scheduler = build(make_config(loop_count=10, talk_every=1), transport, corpus=QuoteCorpus([]))
    await run_ticks(scheduler, session)
    assert transport.named("chat") == []


@pytest.mark.asyncio
async def test_tick_before_connect_does_nothing(make_config, transport):
    session, scheduler = build(make_config(), transport)
    session.phase = Phase.CONNECTING
    await scheduler.tick()
    assert transport.calls == []
