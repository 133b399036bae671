import asyncio

import pytest

from arshooter.db import Database
from arshooter.errors import ServiceUnavailableError
from arshooter.store import ScoreStore, clamp_int
from arshooter.validation import ResultCandidate
from tests.factories import TickClock, run_with_store


def result(score=100, hits=5, shots=10, combo=2, duration=30_000) -> ResultCandidate:
    return ResultCandidate(
        score=score, targets_hit=hits, shots_fired=shots, max_combo=combo, duration_ms=duration
    )


async def platform_user(store: ScoreStore, platform_user_id: int, name=None) -> int:
    await store.upsert_platform_user(platform_user_id, name)
    return (await store.get_user_by_platform(platform_user_id)).id


def test_clamp_int():
    assert clamp_int("25", 10, 1, 100) == 25
    assert clamp_int("abc", 10, 1, 100) == 10
    assert clamp_int(None, 10, 1, 100) == 10
    assert clamp_int(True, 10, 1, 100) == 10
    assert clamp_int(-3, 10, 1, 100) == 1
    assert clamp_int("100000", 10, 1, 100) == 100


def test_leaderboard_pagination_has_one_row_per_user(tmp_path):
    async def scenario(store):
        for n in range(1, 26):
            user_id = await platform_user(store, 1000 + n, f"player{n}")
            # Two games per user; only the better one may be listed.
            await store.insert_result(user_id, result(score=n * 10), "endless")
            await store.insert_result(user_id, result(score=n * 100), "endless")
        return (
            await store.leaderboard("score", 10, 0),
            await store.leaderboard("score", 10, 20),
            await store.leaderboard("score", 100, 0),
        )

    first, last, everyone = run_with_store(tmp_path, scenario, clock=TickClock())

    assert len(first.entries) == 10
    assert first.total == 25
    assert first.has_more is True
    assert [e.result.score for e in first.entries[:3]] == [2500, 2400, 2300]
    assert [e.rank for e in first.entries] == list(range(1, 11))
    assert first.entries[0].username == "player25"

    assert len(last.entries) == 5
    assert last.has_more is False
    assert [e.rank for e in last.entries] == [21, 22, 23, 24, 25]

    user_ids = [e.user_id for e in everyone.entries]
    assert len(user_ids) == len(set(user_ids)) == 25


def test_leaderboard_ties_prefer_most_recent(tmp_path):
    async def scenario(store):
        older = await platform_user(store, 1, "older")
        newer = await platform_user(store, 2, "newer")
        await store.insert_result(older, result(score=500), "endless")
        await store.insert_result(newer, result(score=500), "endless")
        return await store.leaderboard("score")

    page = run_with_store(tmp_path, scenario, clock=TickClock())
    assert [e.username for e in page.entries] == ["newer", "older"]


def test_accuracy_board_requires_minimum_shots(tmp_path):
    async def scenario(store):
        sharp = await platform_user(store, 1, "sharp")
        lucky = await platform_user(store, 2, "lucky")
        await store.insert_result(sharp, result(hits=18, shots=20), "accuracy")
        await store.insert_result(lucky, result(hits=3, shots=3), "accuracy")
        return await store.leaderboard("accuracy")

    page = run_with_store(tmp_path, scenario, clock=TickClock())
    assert [e.username for e in page.entries] == ["sharp"]
    assert page.entries[0].result.accuracy == pytest.approx(0.9)
    assert page.total == 1


def test_hits_board_orders_by_targets_hit(tmp_path):
    async def scenario(store):
        a = await platform_user(store, 1, "a")
        b = await platform_user(store, 2, "b")
        await store.insert_result(a, result(score=9000, hits=5, shots=10), "endless")
        await store.insert_result(b, result(score=100, hits=9, shots=10), "endless")
        return await store.leaderboard("hits")

    page = run_with_store(tmp_path, scenario, clock=TickClock())
    assert [e.username for e in page.entries] == ["b", "a"]


def test_leaderboard_clamps_paging_and_rejects_unknown_kind(tmp_path):
    async def scenario(store):
        page = await store.leaderboard("score", "lots", "-7")
        with pytest.raises(ValueError):
            await store.leaderboard("score; DROP TABLE scores")
        return page

    page = run_with_store(tmp_path, scenario)
    assert page.limit == 10
    assert page.offset == 0
    assert page.entries == []
    assert page.has_more is False


def test_stats_and_ranks(tmp_path):
    async def scenario(store):
        me = await platform_user(store, 1, "me")
        rival = await platform_user(store, 2, "rival")
        fresh = await platform_user(store, 3, "fresh")
        await store.insert_result(me, result(score=300, hits=6, shots=10, combo=4, duration=20_000), "endless")
        await store.insert_result(me, result(score=700, hits=8, shots=10, combo=2, duration=40_000), "timed")
        await store.insert_result(rival, result(score=900), "endless")
        return (
            await store.user_stats(me),
            await store.user_stats(fresh),
            await store.user_rank(me),
            await store.user_rank(rival),
            await store.rank_for_score(950, me),
            await store.rank_for_score(100, rival),
            await store.recent_results(me),
        )

    stats, empty, my_rank, rival_rank, high, low, recent = run_with_store(
        tmp_path, scenario, clock=TickClock()
    )
    assert stats.total_games == 2
    assert stats.best_score == 700
    assert stats.total_hits == 14
    assert stats.avg_accuracy == pytest.approx(0.7)
    assert stats.best_combo == 4
    assert stats.total_playtime_ms == 60_000

    assert empty.total_games == 0
    assert empty.best_score == 0

    assert my_rank == 2
    assert rival_rank == 1
    assert high == 1
    # Other players' bests: 700 (me); fresh has no games.
    assert low == 2

    assert [r.score for r in recent] == [700, 300]
    assert recent[0].game_mode == "timed"


def test_session_users_and_display_names(tmp_path):
    async def scenario(store):
        await store.upsert_session_user("s-1")
        await store.upsert_session_user("s-1")  # idempotent
        user = await store.get_user_by_session("s-1")
        other = await platform_user(store, 5, "Sniper")
        linked = await store.link_platform(user.id, 77)
        relinked = await store.link_platform(user.id, 78)
        renamed = await store.set_display_name(user.id, "ace")
        return (
            user,
            await store.get_user(user.id),
            linked,
            relinked,
            renamed,
            await store.display_name_taken("sniper", exclude_user_id=user.id),
            await store.display_name_taken("Sniper", exclude_user_id=other),
        )

    user, reloaded, linked, relinked, renamed, taken, own_name = run_with_store(tmp_path, scenario)
    assert user.platform_user_id is None
    assert user.public_name == f"Player #{user.id}"
    assert linked is True
    assert relinked is False
    assert renamed is True
    assert reloaded.platform_user_id == 77
    assert reloaded.display_name == "ace"
    assert taken is True
    assert own_name is False


def test_session_upsert_updates_name_on_conflict(tmp_path):
    async def scenario(store):
        await store.upsert_session_user("s-9", display_name="first")
        await store.upsert_session_user("s-9")
        kept = await store.get_user_by_session("s-9")
        await store.upsert_session_user("s-9", display_name="second")
        return kept, await store.get_user_by_session("s-9")

    kept, renamed = run_with_store(tmp_path, scenario)
    assert kept.display_name == "first"
    assert renamed.display_name == "second"
    assert renamed.id == kept.id


def test_platform_upsert_keeps_existing_name_when_none_given(tmp_path):
    async def scenario(store):
        await store.upsert_platform_user(9, "first")
        await store.upsert_platform_user(9, None)
        return await store.get_user_by_platform(9)

    assert run_with_store(tmp_path, scenario).display_name == "first"


def test_pool_timeout_raises_service_unavailable(tmp_path):
    async def scenario():
        db = Database(str(tmp_path / "pool.db"), size=1, acquire_timeout=0.05)
        await db.open()
        try:
            async with db.connection():
                with pytest.raises(ServiceUnavailableError) as exc:
                    async with db.connection():
                        pass
            assert exc.value.status_code == 503
            # The held connection was returned and can be used again.
            async with db.connection() as conn:
                async with conn.execute("SELECT 1") as cur:
                    assert (await cur.fetchone())[0] == 1
        finally:
            await db.close()
        assert not db.is_open

    asyncio.run(scenario())


def test_closed_pool_is_unavailable(tmp_path):
    async def scenario():
        db = Database(str(tmp_path / "closed.db"))
        with pytest.raises(ServiceUnavailableError):
            async with db.connection():
                pass

    asyncio.run(scenario())
