import asyncio

from arshooter.auth import METHOD_PLATFORM, METHOD_SESSION, AuthContext, PlatformIdentity
from arshooter.users import DEV_PLATFORM_USER_ID, UserReconciler
from arshooter.validation import ResultCandidate
from tests.factories import new_session_id, run_with_store


GAME = ResultCandidate(score=250, targets_hit=5, shots_fired=9, max_combo=2, duration_ms=20_000)


async def count_users(store) -> int:
    async with store._db.connection() as conn:
        async with conn.execute("SELECT COUNT(*) FROM users") as cur:
            return (await cur.fetchone())[0]


def test_concurrent_first_submissions_create_one_user(tmp_path):
    identity = PlatformIdentity(platform_user_id=4242, username="twin")

    async def submit(reconciler, store):
        user = await reconciler.for_platform(identity)
        await store.insert_result(user.id, GAME, "endless")
        return user.id

    async def scenario(store):
        reconciler = UserReconciler(store)
        ids = await asyncio.gather(*(submit(reconciler, store) for _ in range(4)))
        stats = await store.user_stats(ids[0])
        return ids, await count_users(store), stats.total_games

    ids, users, games = run_with_store(tmp_path, scenario, pool_size=3)
    assert len(set(ids)) == 1
    assert users == 1
    assert games == 4


def test_concurrent_session_users_are_not_duplicated(tmp_path):
    session_id = new_session_id()

    async def scenario(store):
        reconciler = UserReconciler(store)
        users = await asyncio.gather(*(reconciler.for_session(session_id) for _ in range(3)))
        return {u.id for u in users}, await count_users(store)

    ids, total = run_with_store(tmp_path, scenario, pool_size=3)
    assert len(ids) == 1
    assert total == 1


def test_reconcile_by_method(tmp_path):
    session_id = new_session_id()

    async def scenario(store):
        reconciler = UserReconciler(store)
        by_session = await reconciler.reconcile(AuthContext(method=METHOD_SESSION, session_id=session_id))
        again = await reconciler.reconcile(AuthContext(method=METHOD_SESSION, session_id=session_id))
        by_platform = await reconciler.reconcile(
            AuthContext(method=METHOD_PLATFORM, identity=PlatformIdentity(platform_user_id=8))
        )
        return by_session, again, by_platform

    by_session, again, by_platform = run_with_store(tmp_path, scenario)
    assert by_session.id == again.id
    assert by_session.session_id == session_id
    assert by_platform.platform_user_id == 8
    assert by_platform.id != by_session.id


def test_platform_identity_links_existing_session(tmp_path):
    session_id = new_session_id()
    identity = PlatformIdentity(platform_user_id=55, username="linker")

    async def scenario(store):
        reconciler = UserReconciler(store)
        anon = await reconciler.for_session(session_id)
        linked = await reconciler.for_platform(identity, link_session_id=session_id)
        return anon, linked, await count_users(store)

    anon, linked, total = run_with_store(tmp_path, scenario)
    assert linked.id == anon.id
    assert linked.platform_user_id == 55
    assert linked.display_name == "linker"
    assert total == 1


def test_link_does_not_steal_a_taken_platform_id(tmp_path):
    session_id = new_session_id()
    identity = PlatformIdentity(platform_user_id=56)

    async def scenario(store):
        reconciler = UserReconciler(store)
        owner = await reconciler.for_platform(identity)
        await reconciler.for_session(session_id)
        result = await reconciler.for_platform(identity, link_session_id=session_id)
        session_user = await store.get_user_by_session(session_id)
        return owner, result, session_user

    owner, result, session_user = run_with_store(tmp_path, scenario)
    assert result.id == owner.id
    assert session_user.platform_user_id is None


def test_platform_handle_updates_display_name(tmp_path):
    async def scenario(store):
        reconciler = UserReconciler(store)
        await reconciler.for_platform(PlatformIdentity(platform_user_id=9, username="old_name"))
        renamed = await reconciler.for_platform(PlatformIdentity(platform_user_id=9, username="new_name"))
        kept = await reconciler.for_platform(PlatformIdentity(platform_user_id=9))
        return renamed, kept, await store.get_user_by_platform(9)

    renamed, kept, stored = run_with_store(tmp_path, scenario)
    assert renamed.display_name == "new_name"
    assert kept.display_name == "new_name"
    assert stored.display_name == "new_name"


def test_dev_user(tmp_path):
    first_session = new_session_id()
    second_session = new_session_id()

    async def scenario(store):
        reconciler = UserReconciler(store)
        first = await reconciler.ensure_dev_user(first_session)
        same = await reconciler.ensure_dev_user(first_session)
        second = await reconciler.ensure_dev_user(second_session)
        custom = await reconciler.ensure_dev_user(new_session_id(), mock_platform_user_id=123)
        return first, same, second, custom

    first, same, second, custom = run_with_store(tmp_path, scenario)
    assert first.platform_user_id == DEV_PLATFORM_USER_ID
    assert first.display_name == "dev_user"
    assert same.id == first.id
    # The default mock id is taken, so the second dev user keeps only its session.
    assert second.platform_user_id is None
    assert custom.platform_user_id == 123
