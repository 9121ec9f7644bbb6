import asyncio
from pathlib import Path

import pytest

from quizroom.config import settings
from quizroom.db import init_db, reset_database_engine
from quizroom.game_service import GameService
from quizroom.leaderboard_service import LeaderboardService
from quizroom.rate_limit import FixedWindowLimiter
from quizroom.session_service import SessionService
from quizroom.store import SessionStore


QUIZ = {
    "title": "Science",
    "questions": [
        {"text": "H2O is?", "options": ["Salt", "Water", "Gold", "Air"], "correct": 1},
        {"text": "Closest star?", "options": ["Sun", "Vega", "Sirius", "Rigel"], "correct": 0},
        {"text": "Planets?", "options": ["7", "9", "8", "10"], "correct": 2},
    ],
}


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    original_auto_advance = settings.enable_auto_advance
    test_url = f"sqlite:///{tmp_path / 'quizroom-test.db'}"

    object.__setattr__(settings, "database_url", test_url)
    object.__setattr__(settings, "enable_auto_advance", False)
    reset_database_engine(test_url)
    init_db()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        object.__setattr__(settings, "enable_auto_advance", original_auto_advance)
        reset_database_engine(original_db_url)


class Room:
    def __init__(self, auto_advance: bool = False) -> None:
        self.clock = FakeClock()
        self.store = SessionStore()
        self.limiter = FixedWindowLimiter(clock=self.clock)
        self.leaderboards = LeaderboardService()
        self.sessions = SessionService(self.store, limiter=self.limiter, clock=self.clock)
        self.game = GameService(
            self.store,
            leaderboards=self.leaderboards,
            limiter=self.limiter,
            clock=self.clock,
            auto_advance=auto_advance,
        )
        self.pin = None

    async def open(self, *players, leaderboard_id=None):
        created = await self.sessions.create_session(QUIZ, host_id="host", leaderboard_id=leaderboard_id)
        self.pin = created.get("pin")
        for uid, name in players:
            assert (await self.sessions.join_session(self.pin, name, uid)).success
        return self.pin

    @property
    def document(self):
        return self.store.load(self.pin)

    async def open_question(self):
        """Run the countdown of the current question through to its start."""
        self.clock.advance(settings.countdown_ms)
        assert (await self.game.start_question_timer(self.pin)).get("started") is True

    async def answer(self, uid, index, after_ms=2_000):
        self.clock.advance(after_ms)
        return await self.game.submit_answer(self.pin, uid, index)

    async def finish_question(self):
        assert (await self.game.show_question_results(self.pin)).success
        return await self.game.next_question(self.pin)


def test_first_correct_answer_scores_and_earns_badges():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)
        await room.open_question()

        result = await room.answer("A", 1, after_ms=2_000)

        assert result.success is True
        assert result.get("correct") is True
        assert result.get("points") == 100
        assert result.get("answer_time") == 2_000
        assert sorted(result.get("new_badges")) == ["first_blood", "speed_demon"]

        document = room.document
        assert document.scores["A"] == 100
        assert document.streaks["A"] == 1
        assert document.badges["A"]["speed_demon"] is True
        assert document.badges["A"]["first_blood"] is True
        assert document.answers["A"].answer_time == 2_000

    asyncio.run(scenario())


def test_streak_doubles_second_award_and_wrong_answer_resets_it():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)

        await room.open_question()
        assert (await room.answer("A", 1)).get("points") == 100
        await room.finish_question()

        await room.open_question()
        second = await room.answer("A", 0)
        assert second.get("points") == 200
        assert second.get("multiplier") == 2
        assert room.document.streaks["A"] == 2
        await room.finish_question()

        await room.open_question()
        third = await room.answer("A", 3)
        assert third.get("correct") is False
        assert third.get("points") == 0

        document = room.document
        assert document.streaks["A"] == 0
        assert document.scores["A"] == 300
        assert "perfect_game" not in document.badges["A"]

    asyncio.run(scenario())


def test_perfect_game_awarded_on_last_question():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)

        for index, correct in enumerate((1, 0, 2)):
            await room.open_question()
            result = await room.answer("A", correct, after_ms=5_000)
            if index < 2:
                await room.finish_question()

        assert "perfect_game" in result.get("new_badges")
        assert room.document.scores["A"] == 100 + 200 + 300

    asyncio.run(scenario())


def test_phase_sequence_and_scores_never_regress():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"), ("B", "Bob"))
        statuses = []
        scores = []

        def record(document):
            if not statuses or statuses[-1] != document.status:
                statuses.append(document.status)
            scores.append(dict(document.scores))

        unsubscribe = await room.sessions.subscribe(room.pin, record)
        await room.game.start_game(room.pin)
        for answers in ((1, 2), (0, 0), (3, 2)):
            await room.open_question()
            await room.answer("A", answers[0], after_ms=1_500)
            await room.answer("B", answers[1], after_ms=1_500)
            final = await room.finish_question()
        unsubscribe()

        assert final.get("is_final") is True
        assert statuses == ["lobby"] + ["countdown", "question", "results"] * 3 + ["final"]
        for earlier, later in zip(scores, scores[1:]):
            for uid, score in earlier.items():
                assert later.get(uid, 0) >= score

    asyncio.run(scenario())


def test_transitions_are_refused_out_of_order():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))

        assert (await room.game.next_question(room.pin)).status_code == 409
        assert (await room.game.end_game(room.pin)).error == "Game can only be ended from the final results"
        assert (await room.game.show_question_results(room.pin)).status_code == 409

        assert (await room.game.start_game(room.pin)).success
        again = await room.game.start_game(room.pin)
        assert again.error == "Game can only be started from the lobby"

        missing = await room.game.start_game("0000" if room.pin != "0000" else "0001")
        assert missing.error == "Session not found"

    asyncio.run(scenario())


def test_countdown_expiry_opens_question_once():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)
        room.clock.advance(settings.countdown_ms)

        first, second = await asyncio.gather(
            room.game.start_question_timer(room.pin),
            room.game.start_question_timer(room.pin),
        )

        assert sorted([first.get("started"), second.get("started")]) == [False, True]
        document = room.document
        assert document.status == "question"
        assert document.countdown_end is None
        assert document.question_start_time == room.clock.now

    asyncio.run(scenario())


def test_stale_timer_for_another_question_is_a_no_op():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)

        stale = await room.game.start_question_timer(room.pin, expected_question=1)
        assert stale.get("started") is False
        assert room.document.status == "countdown"

        await room.open_question()
        late = await room.game.show_question_results(room.pin, expected_question=2)
        assert late.get("changed") is False
        assert room.document.status == "question"

    asyncio.run(scenario())


def test_show_results_is_idempotent():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)
        await room.open_question()

        assert (await room.game.show_question_results(room.pin)).get("changed") is True
        assert (await room.game.show_question_results(room.pin)).get("changed") is False
        assert room.document.status == "results"

    asyncio.run(scenario())


def test_answer_rules():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))

        early = await room.game.submit_answer(room.pin, "A", 1)
        assert early.error == "No question is open for answers"

        await room.game.start_game(room.pin)
        await room.open_question()

        outsider = await room.answer("Z", 1)
        assert outsider.error == "You are not a player in this session"
        assert outsider.status_code == 403

        bad_option = await room.answer("A", 4)
        assert bad_option.error == "Invalid answer option"

        assert (await room.answer("A", 2)).success
        duplicate = await room.answer("A", 1)
        assert duplicate.error == "Answer already submitted"
        assert room.document.answers["A"].answer_index == 2

    asyncio.run(scenario())


def test_rapid_resubmission_is_rate_limited():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)
        await room.open_question()

        assert (await room.answer("A", 1)).success
        burst = await room.game.submit_answer(room.pin, "A", 1)
        assert burst.status_code == 429
        assert burst.error == "Too many answers. Please wait 1 seconds."

    asyncio.run(scenario())


def test_answer_after_deadline_and_grace_is_not_counted():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"), ("B", "Bob"))
        await room.game.start_game(room.pin)
        await room.open_question()

        window = settings.question_ms + settings.answer_grace_ms
        on_time = await room.answer("A", 1, after_ms=window)
        assert on_time.success is True
        assert "speed_demon" not in on_time.get("new_badges")

        too_late = await room.answer("B", 1, after_ms=1)
        assert too_late.error == "Time's up! Answer not counted."
        assert "B" not in room.document.answers

    asyncio.run(scenario())


def test_missed_question_breaks_streak():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"), ("B", "Bob"))
        await room.game.start_game(room.pin)

        await room.open_question()
        await room.answer("A", 1)
        await room.answer("B", 1)
        await room.finish_question()

        await room.open_question()
        await room.answer("A", 0)
        await room.finish_question()

        document = room.document
        assert document.streaks == {"A": 2, "B": 0}
        assert document.cold_streaks == {"A": 0, "B": 1}
        assert document.scores == {"A": 300, "B": 100}
        assert document.answers == {}

    asyncio.run(scenario())


def test_first_blood_goes_to_the_first_answer_only():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"), ("B", "Bob"))
        await room.game.start_game(room.pin)
        await room.open_question()

        first = await room.answer("A", 1)
        second = await room.answer("B", 1)

        assert "first_blood" in first.get("new_badges")
        assert "first_blood" not in second.get("new_badges")

    asyncio.run(scenario())


def test_first_blood_is_not_reawarded_after_first_answerer_leaves():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"), ("B", "Bob"), ("C", "Cara"))
        await room.game.start_game(room.pin)
        await room.open_question()

        first = await room.answer("A", 1)
        assert "first_blood" in first.get("new_badges")
        assert (await room.sessions.kick_player(room.pin, "A")).success

        second = await room.answer("B", 1)
        assert second.success is True
        assert "first_blood" not in second.get("new_badges")
        assert room.document.first_answer_taken is True

    asyncio.run(scenario())


def test_snapshot_reveals_answer_only_at_results():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)
        await room.open_question()

        await room.answer("A", 1)

        during = room.document.snapshot()
        assert "correct" not in during["quiz"]["questions"][0]
        assert during["answers"]["A"] == {"answer_time": 2_000, "timestamp": room.clock.now}
        host_view = room.document.snapshot(viewer_is_host=True)
        assert host_view["quiz"]["questions"][0]["correct"] == 1
        assert host_view["answers"]["A"]["answer_index"] == 1
        assert host_view["answers"]["A"]["correct"] is True

        await room.game.show_question_results(room.pin)
        after = room.document.snapshot()
        assert after["quiz"]["questions"][0]["correct"] == 1
        assert after["answers"]["A"]["answer_index"] == 1
        assert after["answers"]["A"]["points"] == 100
        assert "correct" not in after["quiz"]["questions"][1]

    asyncio.run(scenario())


def test_reaction_history_keeps_most_recent_fifteen():
    async def scenario():
        room = Room()
        players = [(f"P{n}", f"Player {n}") for n in range(4)]
        await room.open(*players)
        await room.game.start_game(room.pin)
        await room.open_question()

        sent = []
        for round_number in range(5):
            for uid, _ in players:
                room.clock.advance(10)
                result = await room.game.send_reaction(room.pin, uid, "🔥")
                assert result.success, result.error
                sent.append(result.get("reaction")["id"])

        reactions = room.document.reactions
        assert len(sent) == 20
        assert [reaction.id for reaction in reactions] == sent[-15:]
        assert len({reaction.id for reaction in reactions}) == 15

    asyncio.run(scenario())


def test_reactions_are_capped_per_question_and_validated():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)
        await room.open_question()

        assert (await room.game.send_reaction(room.pin, "A", "🍕")).error == "Unsupported reaction"
        assert (await room.game.send_reaction(room.pin, "Z", "🔥")).status_code == 403

        for _ in range(settings.max_reactions_per_question):
            assert (await room.game.send_reaction(room.pin, "A", "👏")).success
        capped = await room.game.send_reaction(room.pin, "A", "👏")
        assert capped.error == "Reaction limit reached for this question"

        await room.finish_question()
        assert room.document.reactions == []
        assert room.document.reaction_counts == {}

    asyncio.run(scenario())


async def _play_to_final(room):
    await room.game.start_game(room.pin)
    for answers in ((1, 1), (0, 3), (2, 2)):
        await room.open_question()
        await room.answer("A", answers[0])
        await room.answer("B", answers[1])
        result = await room.finish_question()
    assert result.get("is_final") is True


def test_end_game_merges_scores_and_deletes_session():
    async def scenario():
        room = Room()
        leaderboard_id = room.leaderboards.create_leaderboard("Period 3").get("leaderboard_id")
        await room.open(("A", "Alice"), ("B", "Bob"), leaderboard_id=leaderboard_id)
        await _play_to_final(room)

        ended = await room.game.end_game(room.pin)
        assert ended.success is True
        assert ended.get("merged") is True
        assert room.store.load(room.pin) is None

        players = room.leaderboards.get_leaderboard(leaderboard_id).get("leaderboard")["players"]
        assert [(p["display_name"], p["total_score"], p["quizzes_taken"]) for p in players] == [
            ("Alice", 600, 1),
            ("Bob", 200, 1),
        ]

    asyncio.run(scenario())


def test_concurrent_end_game_merges_only_once():
    async def scenario():
        room = Room()
        leaderboard_id = room.leaderboards.create_leaderboard("Period 4").get("leaderboard_id")
        await room.open(("A", "Alice"), ("B", "Bob"), leaderboard_id=leaderboard_id)
        await _play_to_final(room)

        results = await asyncio.gather(room.game.end_game(room.pin), room.game.end_game(room.pin))

        assert sum(1 for result in results if result.get("merged")) == 1
        players = room.leaderboards.get_leaderboard(leaderboard_id).get("leaderboard")["players"]
        assert {p["display_name"]: p["quizzes_taken"] for p in players} == {"Alice": 1, "Bob": 1}

    asyncio.run(scenario())


def test_end_game_without_leaderboard_just_disposes_room():
    async def scenario():
        room = Room()
        await room.open(("A", "Alice"), ("B", "Bob"))
        await _play_to_final(room)

        ended = await room.game.end_game(room.pin)
        assert ended.get("merged") is False
        assert room.store.load(room.pin) is None

    asyncio.run(scenario())


def test_end_game_disposes_room_even_when_merge_fails():
    async def scenario():
        room = Room()
        leaderboard_id = room.leaderboards.create_leaderboard("Gone soon").get("leaderboard_id")
        await room.open(("A", "Alice"), ("B", "Bob"), leaderboard_id=leaderboard_id)
        await _play_to_final(room)
        assert room.leaderboards.delete_leaderboard(leaderboard_id).success

        ended = await room.game.end_game(room.pin)
        assert ended.success is True
        assert ended.get("merged") is False
        assert ended.get("merge_error") == "Leaderboard not found"
        assert room.document is None

        again = await room.game.end_game(room.pin)
        assert again.success is False
        assert again.status_code == 404

    asyncio.run(scenario())


def test_auto_advance_runs_countdown_and_question_timers():
    original_countdown = settings.countdown_seconds
    original_question = settings.question_seconds
    object.__setattr__(settings, "countdown_seconds", 0)
    object.__setattr__(settings, "question_seconds", 0)

    async def scenario():
        room = Room(auto_advance=True)
        await room.open(("A", "Alice"))

        await room.game.start_game(room.pin)
        for _ in range(50):
            if room.document.status == "results":
                break
            await asyncio.sleep(0.01)

        assert room.document.status == "results"
        room.game.cancel_timers(room.pin)

    try:
        asyncio.run(scenario())
    finally:
        object.__setattr__(settings, "countdown_seconds", original_countdown)
        object.__setattr__(settings, "question_seconds", original_question)


def test_timers_stay_idle_without_auto_advance():
    async def scenario():
        room = Room(auto_advance=False)
        await room.open(("A", "Alice"))
        await room.game.start_game(room.pin)
        await asyncio.sleep(0)

        assert room.game._timers == {}
        assert room.document.status == "countdown"

    asyncio.run(scenario())
