import asyncio

from fakes import FakeClock, ScriptedGateway, args, intent

from Stockwright.catalog import ToolName
from Stockwright.clarification import ClarificationManager
from Stockwright.config import Settings
from Stockwright.errors import ErrorKind, UpstreamTimeout
from Stockwright.metrics import get_counter
from Stockwright.pipeline import SUPERSEDED_REASON, CommandPipeline


async def _on_hand(store, product: str, warehouse: str) -> int:
    return (await store.check_stock(product, warehouse))["total_quantity"]


async def test_confident_transfer_executes(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("transfer_stock", 0.95)],
        extract=[
            args(
                product_id="widget-A",
                from_warehouse_id="warehouse-1",
                to_warehouse_id="warehouse-2",
                quantity=10,
            )
        ],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()

    turn = await pipeline.submit(
        session, "transfer 10 units of widget-A from warehouse-1 to warehouse-2"
    )

    assert turn.type == "executed"
    assert turn.result.success
    assert turn.debug.stage1.action == "transfer_stock"
    assert turn.debug.stage2.missing_required == []
    assert not turn.debug.used_fallback
    assert turn.log_entry.reversible
    assert len(session.log) == 1
    assert await _on_hand(store, "widget-A", "warehouse-1") == 90
    assert await _on_hand(store, "widget-A", "warehouse-2") == 25
    assert get_counter("pipeline.turn.executed") == 1
    assert get_counter("gate.execute") == 1


async def test_missing_fields_clarify_then_follow_up_completes(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("add_stock", 0.9), intent("add_stock", 0.85)],
        extract=[args(product_id="bolts"), args(quantity=50, warehouse_id="warehouse-1")],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()

    first = await pipeline.submit(session, "add some bolts")
    assert first.type == "clarify"
    assert first.action is ToolName.add_stock
    assert first.missing_fields == ["quantity", "warehouse_id"]
    assert first.known_parameters == {"product_id": "bolts"}
    assert "quantity, warehouse" in first.prompt
    assert session.clarification.is_collecting

    second = await pipeline.submit(session, "50 to warehouse-1")
    assert second.type == "executed"
    assert second.log_entry.parameters["product_id"] == "bolts"
    assert second.log_entry.raw_command == "add some bolts / 50 to warehouse-1"
    assert session.clarification.pending is None
    assert await _on_hand(store, "bolts", "warehouse-1") == 550
    # The follow-up was classified knowing what was still being asked for
    assert "PENDING OPERATION" in gw.prompts("ClassifierReply")[1]


async def test_short_answer_classified_as_clarify_still_merges(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("add_stock", 0.9), intent("clarify", 0.3)],
        extract=[args(product_id="bolts"), args(quantity=50, warehouse_id="warehouse-1")],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()
    await pipeline.submit(session, "add some bolts")
    turn = await pipeline.submit(session, "50, warehouse-1")
    assert turn.type == "executed"
    # Intent confidence carried over from the opening turn
    assert turn.debug.stage1.confidence == 0.9


async def test_classifier_timeout_rejects_with_fallback(store, make_pipeline):
    gw = ScriptedGateway(classify=[UpstreamTimeout(15_000)])
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()

    turn = await pipeline.submit(session, "add 50 bolts to warehouse-1")

    assert turn.type == "rejected"
    assert turn.reason == "language model unavailable"
    assert turn.debug.used_fallback
    assert turn.debug.stage1.confidence == 0.0
    assert turn.debug.fallback_reason.startswith("upstream_timeout")
    assert turn.debug.stage2 is not None
    assert turn.debug.stage2.confidence == 0.0
    assert turn.debug.stage2.parameters == {}
    assert len(session.log) == 0


async def test_extractor_timeout_rejects_with_fallback(store, make_pipeline):
    gw = ScriptedGateway(classify=[intent("add_stock")], extract=[UpstreamTimeout(15_000)])
    pipeline = make_pipeline(gw)
    turn = await pipeline.submit(pipeline.new_session(), "add 50 bolts to warehouse-1")
    assert turn.type == "rejected"
    assert turn.debug.used_fallback
    assert turn.debug.stage2.confidence == 0.0
    assert turn.debug.stage2.missing_required == ["product_id", "quantity", "warehouse_id"]
    assert await _on_hand(store, "bolts", "warehouse-1") == 500


async def test_same_source_and_destination_never_dispatched(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("transfer_stock")],
        extract=[
            args(
                product_id="widget-A",
                from_warehouse_id="warehouse-1",
                to_warehouse_id="warehouse-1",
                quantity=5,
            )
        ],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()

    turn = await pipeline.submit(session, "transfer 5 widget-A from warehouse-1 to warehouse-1")

    assert turn.type == "rejected"
    assert turn.result.error_kind is ErrorKind.validation_error
    assert turn.reason == "Source and destination warehouse must be different."
    assert turn.log_entry is None
    assert len(session.log) == 0
    assert await _on_hand(store, "widget-A", "warehouse-1") == 100


async def test_failed_execution_is_logged_but_not_undoable(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("remove_stock")],
        extract=[args(product_id="hinges", warehouse_id="warehouse-2", quantity=999)],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()

    turn = await pipeline.submit(session, "remove 999 hinges from warehouse-2")
    assert turn.type == "rejected"
    assert turn.reason.startswith("Insufficient stock")
    assert [e.success for e in session.log] == [False]

    undo = await pipeline.submit(session, "undo")
    assert undo.type == "rejected"
    assert undo.result.error_kind is ErrorKind.nothing_to_undo


async def test_undo_restores_stock_without_a_model_call(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("transfer_stock")],
        extract=[
            args(
                product_id="widget-A",
                from_warehouse_id="warehouse-1",
                to_warehouse_id="warehouse-2",
                quantity=10,
            )
        ],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()
    done = await pipeline.submit(session, "move 10 widget-A from warehouse-1 to warehouse-2")
    calls_before = len(gw.calls)

    undo = await pipeline.submit(session, "Undo last.")

    assert undo.type == "executed"
    assert undo.log_entry.undoes == done.log_entry.id
    assert len(gw.calls) == calls_before
    assert await _on_hand(store, "widget-A", "warehouse-1") == 100
    assert await _on_hand(store, "widget-A", "warehouse-2") == 15
    assert len(session.log) == 2


async def test_undo_with_empty_history(store, make_pipeline):
    pipeline = make_pipeline(ScriptedGateway())
    turn = await pipeline.submit(pipeline.new_session(), "undo")
    assert turn.type == "rejected"
    assert turn.reason == "There is nothing to undo."


async def test_confident_different_action_supersedes_pending(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("add_stock", 0.9), intent("check_stock", 0.92)],
        extract=[args(product_id="bolts"), args(product_id="widget-A")],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()
    await pipeline.submit(session, "add some bolts")

    turn = await pipeline.submit(session, "how many widget-A do we have?")

    assert turn.type == "executed"
    assert turn.log_entry.action is ToolName.check_stock
    assert turn.result.data["total_quantity"] == 115
    assert session.clarification.pending is None
    assert get_counter("clarify.abandoned") == 1


async def test_unsure_different_action_is_treated_as_an_answer(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("add_stock", 0.9), intent("check_stock", 0.5)],
        extract=[args(product_id="bolts"), args(quantity=50)],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()
    await pipeline.submit(session, "add some bolts")

    turn = await pipeline.submit(session, "50")

    assert turn.type == "clarify"
    assert turn.action is ToolName.add_stock
    assert turn.missing_fields == ["warehouse_id"]
    assert turn.known_parameters == {"product_id": "bolts", "quantity": 50}
    assert session.clarification.pending.turns == 1


async def test_cancel_abandons_pending(store, make_pipeline):
    gw = ScriptedGateway(classify=[intent("add_stock")], extract=[args(product_id="bolts")])
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()
    await pipeline.submit(session, "add some bolts")

    turn = await pipeline.submit(session, "never mind")

    assert turn.type == "rejected"
    assert turn.reason == "cancelled"
    assert session.clarification.pending is None
    assert len(gw.calls) == 2


async def test_turn_limit_expires_pending(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("add_stock")] * 3,
        extract=[args(product_id="bolts"), args(), args()],
    )
    pipeline = make_pipeline(gw, Settings(clarify_max_turns=2))
    session = pipeline.new_session()

    assert (await pipeline.submit(session, "add some bolts")).type == "clarify"
    assert (await pipeline.submit(session, "umm")).type == "clarify"
    turn = await pipeline.submit(session, "not sure")

    assert turn.type == "rejected"
    assert turn.reason == "clarification expired"
    assert session.clarification.pending is None


async def test_stale_pending_does_not_capture_new_input(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("add_stock"), intent("check_stock", 0.6)],
        extract=[args(product_id="bolts"), args(product_id="bolts")],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()
    clock = FakeClock()
    session.clarification = ClarificationManager(max_age_seconds=300, clock=clock)
    await pipeline.submit(session, "add some bolts")
    clock.advance(301)

    turn = await pipeline.submit(session, "bolts?")

    assert "PENDING OPERATION" not in gw.prompts("ClassifierReply")[1]
    assert turn.type == "clarify"
    assert turn.action is ToolName.check_stock


async def test_back_reference_reuses_last_product_and_warehouse(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("add_stock"), intent("add_stock")],
        extract=[args(product_id="bolts", quantity=5, warehouse_id="warehouse-1"),
                 args(quantity=5)],
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()
    await pipeline.submit(session, "add 5 bolts to warehouse-1")

    turn = await pipeline.submit(session, "add 5 more")

    assert turn.type == "executed"
    assert turn.log_entry.parameters["product_id"] == "bolts"
    assert await _on_hand(store, "bolts", "warehouse-1") == 510
    assert "Last product: bolts" in gw.prompts("ClassifierReply")[1]


async def test_not_an_inventory_request(store, make_pipeline):
    pipeline = make_pipeline(ScriptedGateway(classify=[intent("none", 0.99)]))
    turn = await pipeline.submit(pipeline.new_session(), "what's the weather like?")
    assert turn.type == "rejected"
    assert turn.reason == "no inventory operation recognized"


async def test_ambiguous_operation_asks_without_extracting(store, make_pipeline):
    gw = ScriptedGateway(classify=[intent("clarify", 0.4)])
    pipeline = make_pipeline(gw)
    turn = await pipeline.submit(pipeline.new_session(), "sort out the bolts")
    assert turn.type == "clarify"
    assert turn.action is None
    assert gw.prompts("ExtractorReply") == []


async def test_empty_input(store, make_pipeline):
    gw = ScriptedGateway()
    pipeline = make_pipeline(gw)
    turn = await pipeline.submit(pipeline.new_session(), "   ")
    assert turn.type == "rejected"
    assert gw.calls == []


async def test_new_submission_supersedes_in_flight_turn(store, make_pipeline):
    gw = ScriptedGateway(
        classify=[intent("check_stock")],
        extract=[args(product_id="bolts")],
        delay=0.05,
    )
    pipeline = make_pipeline(gw)
    session = pipeline.new_session()

    first = asyncio.create_task(pipeline.submit(session, "add some bolts"))
    await asyncio.sleep(0.01)
    second = await pipeline.submit(session, "check stock of bolts")
    superseded = await first

    assert superseded.type == "rejected"
    assert superseded.reason == SUPERSEDED_REASON
    assert gw.cancelled == 1
    assert second.type == "executed"
    assert second.result.data["total_quantity"] == 500
    assert session.in_flight is None
    assert get_counter("pipeline.turn.superseded") == 1


class _SlowTransfers:
    """Store whose transfers take long enough to be superseded mid-dispatch."""

    def __init__(self, inner):
        self._inner = inner
        self.started = asyncio.Event()

    def __getattr__(self, name):
        return getattr(self._inner, name)

    async def transfer_stock(self, **kwargs):
        self.started.set()
        await asyncio.sleep(0.05)
        return await self._inner.transfer_stock(**kwargs)


async def test_supersede_after_dispatch_reports_the_applied_change(store):
    gw = ScriptedGateway(
        classify=[intent("transfer_stock"), intent("check_stock")],
        extract=[
            args(
                product_id="widget-A",
                from_warehouse_id="warehouse-1",
                to_warehouse_id="warehouse-2",
                quantity=10,
            ),
            args(product_id="widget-A", warehouse_id="warehouse-1"),
        ],
    )
    slow = _SlowTransfers(store)
    pipeline = CommandPipeline.build(Settings(), gateway=gw, store=slow)
    session = pipeline.new_session()

    first = asyncio.create_task(
        pipeline.submit(session, "move 10 widget-A from warehouse-1 to warehouse-2")
    )
    await slow.started.wait()
    second = await pipeline.submit(session, "how many widget-A in warehouse-1?")
    moved = await first

    assert moved.type == "executed"
    assert moved.log_entry.reversible
    assert moved.result.data["from_quantity"] == 90
    assert second.type == "executed"
    assert second.result.data["total_quantity"] == 90
    assert [e.action for e in session.log] == [ToolName.transfer_stock, ToolName.check_stock]
    assert get_counter("pipeline.execute.outlived_cancel") == 1


async def test_sessions_are_isolated(store, make_pipeline):
    gw = ScriptedGateway(classify=[intent("add_stock")], extract=[args(product_id="bolts")])
    pipeline = make_pipeline(gw)
    a, b = pipeline.new_session(), pipeline.new_session()
    await pipeline.submit(a, "add some bolts")
    assert a.clarification.is_collecting
    assert not b.clarification.is_collecting
    assert a.session_id != b.session_id
