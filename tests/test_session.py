"""Tests for ScanSession (scan flow, visibility wiring, SSE) and SessionRegistry."""

import asyncio

import pytest

from gourmet_vision import services
from gourmet_vision.image_store import ImageStore
from gourmet_vision.observability import AnalysisError, ScanInProgressError
from gourmet_vision.schemas import GenerationState
from gourmet_vision.session import SCAN_FAILED_MESSAGE, ScanSession, SessionRegistry
from gourmet_vision.visibility import Rect, VisibilityConfig

from fakes import FakeImageGenerator, FakeMenuParser, make_record, parse_sse_event, settle

BEEF_NOODLES = make_record("Beef Noodle Soup", original_name="牛肉面", price="$12")


def _session(parser=None, generator=None, **kwargs):
    return ScanSession(
        "s1",
        parser or FakeMenuParser([BEEF_NOODLES]),
        generator or FakeImageGenerator(result="R"),
        **kwargs,
    )


class TestScan:
    def test_scan_installs_dishes(self):
        async def scenario():
            session = _session()
            dishes = await session.scan(b"menu-bytes", "image/png")

            assert len(dishes) == 1
            dish = dishes[0]
            assert dish.original_name == "牛肉面"
            assert dish.english_translation == "Beef Noodle Soup"
            assert dish.price == "$12"
            assert dish.generation_state is GenerationState.NOT_REQUESTED
            assert dish.image_ref is None
            assert dish.id.startswith("dish-0-")

            assert session.state.is_analyzing is False
            assert session.state.has_menu_image is True
            assert session.state.error is None
            assert session._parser.calls == [(b"menu-bytes", "image/png")]

        asyncio.run(scenario())

    def test_rescan_uses_fresh_ids(self):
        async def scenario():
            session = _session()
            first = await session.scan(b"a")
            second = await session.scan(b"b")
            assert first[0].id != second[0].id
            assert [d.id for d in session.store.dishes()] == [second[0].id]

        asyncio.run(scenario())

    def test_empty_menu_is_a_valid_result(self):
        async def scenario():
            session = _session(FakeMenuParser([]))
            assert await session.scan(b"a") == []
            assert session.state.error is None

        asyncio.run(scenario())

    def test_analysis_failure_keeps_previous_dishes(self):
        async def scenario():
            parser = FakeMenuParser([BEEF_NOODLES])
            session = _session(parser)
            before = await session.scan(b"a")

            parser.error = AnalysisError("unparseable")
            with pytest.raises(AnalysisError):
                await session.scan(b"b")

            assert session.store.dishes() == before
            assert session.state.error == SCAN_FAILED_MESSAGE
            assert session.state.is_analyzing is False

        asyncio.run(scenario())

    def test_analysis_failure_logs_error_code(self, caplog):
        async def scenario():
            session = _session(FakeMenuParser(error=AnalysisError("unparseable")))
            with pytest.raises(AnalysisError):
                await session.scan(b"a")

        with caplog.at_level("WARNING", logger="gourmet_vision.observability"):
            asyncio.run(scenario())
        lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("scan_error")]
        assert len(lines) == 1
        assert "ANALYSIS_FAILED" in lines[0]
        assert "unparseable" in lines[0]

    def test_new_scan_clears_error_banner(self):
        async def scenario():
            parser = FakeMenuParser(error=AnalysisError("x"))
            session = _session(parser)
            with pytest.raises(AnalysisError):
                await session.scan(b"a")

            parser.error = None
            await session.scan(b"a")
            assert session.state.error is None

        asyncio.run(scenario())

    def test_concurrent_scan_is_refused(self):
        async def scenario():
            parser = FakeMenuParser([BEEF_NOODLES], gated=True)
            session = _session(parser)
            first = asyncio.ensure_future(session.scan(b"a"))
            await settle()
            assert session.state.is_analyzing is True

            with pytest.raises(ScanInProgressError):
                await session.scan(b"b")

            parser.gate.set()
            await first
            assert session.state.is_analyzing is False
            assert len(parser.calls) == 1

        asyncio.run(scenario())


class TestVisibility:
    def test_visible_card_generates_once(self):
        async def scenario():
            generator = FakeImageGenerator(result="R")
            session = _session(generator=generator)
            dish_id = (await session.scan(b"a"))[0].id

            task = session.dish_visible(dish_id)
            assert task is not None
            assert session.dish_visible(dish_id) is None
            await task

            dish = session.store.get(dish_id)
            assert dish.generation_state is GenerationState.SUCCEEDED
            assert dish.image_ref == "R"
            assert generator.calls == [("Beef Noodle Soup", "description of Beef Noodle Soup")]

        asyncio.run(scenario())

    def test_viewport_fires_cards_in_view(self):
        async def scenario():
            parser = FakeMenuParser([make_record("Soup"), make_record("Cake")])
            generator = FakeImageGenerator(manual=True)
            session = _session(parser, generator, visibility=VisibilityConfig(proximity_margin=0))
            soup, cake = await session.scan(b"a")

            fired = session.viewport(
                Rect(0, 0, 1, 800),
                {soup.id: Rect(0, 100, 1, 300), cake.id: Rect(0, 1200, 1, 300)},
            )
            await settle()

            assert fired == [soup.id]
            assert [name for name, _ in generator.calls] == ["Soup"]
            assert session.store.get(cake.id).generation_state is GenerationState.NOT_REQUESTED

            generator.succeed("R")
            await session.scheduler.drain()

        asyncio.run(scenario())

    def test_retry_after_failure(self):
        async def scenario():
            generator = FakeImageGenerator(manual=True)
            session = _session(generator=generator)
            dish_id = (await session.scan(b"a"))[0].id

            task = session.dish_visible(dish_id)
            await settle()
            generator.fail()
            await task
            assert session.store.state_of(dish_id) is GenerationState.FAILED
            # Scrolling past a failed card does not regenerate it.
            assert session.dish_visible(dish_id) is None

            retry_task = session.retry(dish_id)
            await settle()
            generator.succeed("R2")
            await retry_task
            assert session.store.get(dish_id).image_ref == "R2"
            assert len(generator.calls) == 2

        asyncio.run(scenario())

    def test_rescan_discards_in_flight_result(self):
        async def scenario():
            generator = FakeImageGenerator(manual=True)
            session = _session(generator=generator)
            old_id = (await session.scan(b"a"))[0].id
            task = session.dish_visible(old_id)
            await settle()

            new_id = (await session.scan(b"b"))[0].id
            generator.succeed("R-old")
            await task

            assert session.store.get(old_id) is None
            assert session.store.get(new_id).image_ref is None
            assert session.trigger.is_watching(new_id)

        asyncio.run(scenario())


class TestUiState:
    def test_reset_clears_everything(self):
        async def scenario():
            session = _session()
            await session.scan(b"a")
            session.update_ui(active_tab="menu", is_camera_open=True)
            assert session.state.active_tab == "menu"

            session.reset()
            assert session.store.dishes() == []
            assert session.state.has_menu_image is False
            assert session.state.active_tab == "photos"
            assert session.trigger.watched() == []

        asyncio.run(scenario())

    def test_view_uses_camel_case_dishes(self):
        async def scenario():
            session = _session()
            await session.scan(b"a")
            body = session.view().model_dump(mode="json", by_alias=True)
            assert body["session_id"] == "s1"
            assert body["dishes"][0]["englishTranslation"] == "Beef Noodle Soup"
            assert body["dishes"][0]["generationState"] == "not_requested"

        asyncio.run(scenario())


class TestEvents:
    def test_snapshot_then_changes(self):
        async def scenario():
            session = _session()
            stream = session.events(heartbeat_s=5)

            _, event, data = parse_sse_event(await stream.__anext__())
            assert event == "state"
            assert data["state"]["is_analyzing"] is False
            _, event, data = parse_sse_event(await stream.__anext__())
            assert event == "menu_data"
            assert data["dishes"] == []

            dish_id = (await session.scan(b"a"))[0].id
            await session.dish_visible(dish_id)

            frames = [parse_sse_event(await stream.__anext__()) for _ in range(5)]
            events = [(event, data) for _, event, data in frames]

            assert events[0][0] == "state" and events[0][1]["state"]["is_analyzing"] is True
            assert events[1][0] == "menu_data"
            assert events[1][1]["dishes"][0]["originalName"] == "牛肉面"
            assert events[2][0] == "state" and events[2][1]["state"]["is_analyzing"] is False
            assert events[3][0] == "dish_update"
            assert events[3][1]["dish"]["generationState"] == "pending"
            assert events[4][0] == "dish_update"
            assert events[4][1]["dish"]["imageRef"] == "R"
            ids = [int(event_id) for event_id, _, _ in frames]
            assert ids == sorted(ids)

            session.close()
            with pytest.raises(StopAsyncIteration):
                while True:
                    await stream.__anext__()

        asyncio.run(scenario())

    def test_heartbeat_when_idle(self):
        async def scenario():
            session = _session()
            stream = session.events(heartbeat_s=0.01)
            await stream.__anext__()
            await stream.__anext__()
            _, event, data = parse_sse_event(await stream.__anext__())
            assert event == "heartbeat"
            assert "ts" in data
            await stream.aclose()

        asyncio.run(scenario())


def _factory(session_id):
    return ScanSession(session_id, FakeMenuParser(), FakeImageGenerator())


class TestRegistry:
    def test_create_and_get(self):
        registry = SessionRegistry(_factory)
        session = registry.create()
        assert registry.get(session.session_id) is session
        assert registry.get("missing") is None
        assert len(registry) == 1

    def test_evicts_least_recently_used(self):
        registry = SessionRegistry(_factory, max_sessions=2)
        a = registry.create()
        b = registry.create()
        registry.get(a.session_id)
        c = registry.create()

        assert registry.get(b.session_id) is None
        assert registry.get(a.session_id) is a
        assert registry.get(c.session_id) is c
        assert b._closed

    def test_discard(self):
        registry = SessionRegistry(_factory)
        session = registry.create()
        assert registry.discard(session.session_id) is True
        assert registry.discard(session.session_id) is False
        assert session._closed

    def test_teardown_hook_runs_on_every_removal(self):
        closed = []
        registry = SessionRegistry(_factory, max_sessions=1, on_close=closed.append)
        first = registry.create()
        second = registry.create()
        third = registry.create()
        registry.discard(third.session_id)
        assert closed == [first.session_id, second.session_id, third.session_id]

        fourth = registry.create()
        registry.close_all()
        assert closed[-1] == fourth.session_id
        assert len(registry) == 0

    def test_evicted_session_images_are_released(self, monkeypatch):
        for name in ("R2_BUCKET", "R2_ENDPOINT", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY"):
            monkeypatch.delenv(name, raising=False)
        store = ImageStore()
        monkeypatch.setattr(services, "_image_store", store)
        registry = SessionRegistry(_factory, max_sessions=1, on_close=services.release_session_images)

        first = registry.create()
        store.put(f"gen/{first.session_id}/a.png", b"a", content_type="image/png")
        second = registry.create()
        store.put(f"gen/{second.session_id}/b.png", b"b", content_type="image/png")

        assert store.get(f"gen/{first.session_id}/a.png") is None
        assert store.get(f"gen/{second.session_id}/b.png") == (b"b", "image/png")
