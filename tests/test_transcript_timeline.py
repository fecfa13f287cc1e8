from bewerbungstrainer.orchestrator.schemas import TranscriptRole
from bewerbungstrainer.voice.transcript import TranscriptTimeline, transcript_from_remote


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _timeline() -> tuple[TranscriptTimeline, FakeClock]:
    clock = FakeClock()
    timeline = TranscriptTimeline(clock=clock)
    timeline.start()
    return timeline, clock


def test_first_agent_message_starts_at_zero() -> None:
    timeline, clock = _timeline()
    clock.now += 4

    entry = timeline.append(TranscriptRole.AGENT, "Hallo, willkommen zum Gespräch.")

    assert entry is not None
    assert entry.start_seconds == 0
    assert entry.time_label == "00:00"


def test_user_message_starts_where_agent_stopped() -> None:
    timeline, clock = _timeline()

    clock.now += 5
    timeline.append(TranscriptRole.AGENT, "Erzählen Sie etwas über sich.")
    clock.now += 12
    user = timeline.append(TranscriptRole.USER, "Ich bin Softwareentwickler.")

    assert user.start_seconds == 5


def test_agent_message_starts_at_previous_arrival_of_either_role() -> None:
    timeline, clock = _timeline()

    clock.now += 5
    timeline.append(TranscriptRole.AGENT, "Frage eins")
    clock.now += 12
    timeline.append(TranscriptRole.USER, "Antwort eins")
    clock.now += 4
    agent = timeline.append(TranscriptRole.AGENT, "Frage zwei")

    assert agent.start_seconds == 17


def test_user_without_prior_agent_starts_at_zero() -> None:
    timeline, clock = _timeline()
    clock.now += 9

    entry = timeline.append(TranscriptRole.USER, "Hallo?")

    assert entry.start_seconds == 0


def test_interleavings_follow_turn_heuristic() -> None:
    timeline, _ = _timeline()
    arrivals = [
        (TranscriptRole.AGENT, 3),
        (TranscriptRole.USER, 10),
        (TranscriptRole.USER, 14),
        (TranscriptRole.AGENT, 20),
        (TranscriptRole.AGENT, 26),
        (TranscriptRole.USER, 40),
    ]

    entries = [timeline.append(role, f"text {i}", elapsed_seconds=t) for i, (role, t) in enumerate(arrivals)]

    last_arrival = 0
    last_agent = 0
    for (role, arrived), entry in zip(arrivals, entries):
        if role == TranscriptRole.AGENT:
            assert entry.start_seconds == last_arrival
            last_agent = arrived
        else:
            assert entry.start_seconds == last_agent
        last_arrival = arrived


def test_blank_text_is_ignored() -> None:
    timeline, _ = _timeline()

    assert timeline.append(TranscriptRole.AGENT, "   ") is None
    assert len(timeline) == 0


def test_entries_preserve_arrival_order() -> None:
    timeline, _ = _timeline()
    timeline.append(TranscriptRole.USER, "zuerst", elapsed_seconds=10)
    timeline.append(TranscriptRole.AGENT, "danach", elapsed_seconds=2)

    assert [e.text for e in timeline.entries] == ["zuerst", "danach"]


def test_remote_transcript_is_relative_to_first_timestamp() -> None:
    entries = transcript_from_remote(
        [
            {"role": "interviewer", "text": "Guten Tag!", "timestamp": 1_700_000_000},
            {"role": "user", "text": "Hallo.", "timestamp": 1_700_000_007},
            {"role": "user", "text": "", "timestamp": 1_700_000_008},
            {"role": "interviewer", "text": "Warum wir?", "timestamp": 1_700_000_065},
        ]
    )

    assert [e.role for e in entries] == [TranscriptRole.AGENT, TranscriptRole.USER, TranscriptRole.AGENT]
    assert [e.start_seconds for e in entries] == [0, 7, 65]
    assert entries[2].time_label == "01:05"
