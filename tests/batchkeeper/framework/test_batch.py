import pytest

from batchkeeper.channels import InlineCallbackChannel
from batchkeeper.framework import (
    BatchAlreadyStartedError,
    BatchConfig,
    BatchEngine,
    CallbackHandlerRegistry,
    GlobalContext,
    InvalidEventError,
    NoJobsBlockError,
    UnknownCallbackError,
)
from batchkeeper.framework.keys import batch_key, callbacks_key, processed_key
from batchkeeper.stores import MemoryStore


# ---------------------------------------------------------------------------
# Helper
# ---------------------------------------------------------------------------


class Recorder:
    """Callback handler remembering `(event, bid, opts)` per invocation."""

    def __init__(self):
        self.calls = []

    def on_complete(self, status, opts):
        self.calls.append(("complete", status.bid, opts))

    def on_success(self, status, opts):
        self.calls.append(("success", status.bid, opts))


def make_engine(**config):
    recorder = Recorder()
    gctx = GlobalContext(
        config=BatchConfig(**config),
        store=MemoryStore(),
        channel=InlineCallbackChannel(),
        handlers=CallbackHandlerRegistry({"rec": recorder}),
    )
    return BatchEngine(gctx), recorder


async def no_items(ctx):
    return None


# ---------------------------------------------------------------------------
# Declaration API
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_run_without_block_returns_empty_list():
    engine, _ = make_engine()
    batch = engine.batch()

    assert await batch.run() == []
    assert not batch.started


def test_add_jobs_requires_a_block():
    engine, _ = make_engine()

    with pytest.raises(NoJobsBlockError):
        engine.batch().add_jobs(None)


@pytest.mark.asyncio
async def test_on_rejects_unknown_event():
    engine, _ = make_engine()

    with pytest.raises(InvalidEventError):
        await engine.batch().on("finished", "rec")


@pytest.mark.asyncio
async def test_on_rejects_unregistered_callback():
    engine, _ = make_engine()
    batch = engine.batch()

    with pytest.raises(UnknownCallbackError):
        await batch.on("complete", "missing")
    await batch.on("complete", "rec#on_complete")

    assert await engine.store.scard(callbacks_key(batch.bid, "complete")) == 1


@pytest.mark.asyncio
async def test_on_accepts_any_callback_without_local_handlers():
    gctx = GlobalContext(store=MemoryStore(), channel=InlineCallbackChannel())
    engine = BatchEngine(gctx)
    batch = engine.batch()

    await batch.on("complete", "remote.Handler")

    assert await engine.store.scard(callbacks_key(batch.bid, "complete")) == 1


@pytest.mark.asyncio
async def test_batch_cannot_be_committed_twice():
    engine, _ = make_engine()
    batch = engine.batch()

    async def block(ctx):
        await ctx.add()

    await batch.jobs(block)

    with pytest.raises(BatchAlreadyStartedError):
        await batch.run()
    with pytest.raises(BatchAlreadyStartedError):
        await batch.on("complete", "rec")


@pytest.mark.asyncio
async def test_add_returns_given_or_generated_ids():
    engine, _ = make_engine()
    batch = engine.batch()
    declared = []

    async def block(ctx):
        declared.append(await ctx.add("item-1"))
        declared.append(await ctx.add())

    ids = await batch.jobs(block)

    assert ids == declared
    assert ids[0] == "item-1"
    assert ids[1]
    assert ids[1] != "item-1"


@pytest.mark.asyncio
async def test_description_and_created_at_are_persisted():
    engine, _ = make_engine()
    batch = engine.batch()
    await batch.set_description("nightly import")

    async def block(ctx):
        await ctx.add()

    await batch.jobs(block)

    snapshot = await (await batch.status()).snapshot()
    assert snapshot.description == "nightly import"
    assert snapshot.created_at == pytest.approx(batch.created_at)


@pytest.mark.asyncio
async def test_registrations_are_buffered_until_commit():
    engine, _ = make_engine()
    batch = engine.batch()
    seen = []

    async def block(ctx):
        await ctx.add()
        seen.append(await engine.status(batch.bid).total())

    await batch.jobs(block)

    assert seen == [0]
    assert await engine.status(batch.bid).total() == 1


@pytest.mark.asyncio
async def test_zero_push_interval_flushes_every_item():
    engine, _ = make_engine(push_interval=0)
    batch = engine.batch()
    seen = []

    async def block(ctx):
        for _ in range(2):
            await ctx.add()
            seen.append(await engine.status(batch.bid).total())

    await batch.jobs(block)

    assert seen == [1, 2]
    assert await engine.status(batch.bid).total() == 2


@pytest.mark.asyncio
async def test_reattached_batch_accepts_more_items():
    engine, _ = make_engine()
    batch = engine.batch()

    async def block(ctx):
        await ctx.add()

    await batch.jobs(block)
    await engine.batch(batch.bid).jobs(block)

    assert await engine.status(batch.bid).total() == 2
    assert await engine.status(batch.bid).pending() == 2


@pytest.mark.asyncio
async def test_duplicate_item_id_is_counted_once():
    engine, recorder = make_engine()
    batch = engine.batch()
    await batch.on("complete", "rec")

    async def block(ctx):
        await ctx.add("item-1")
        await ctx.add("item-1")

    assert await batch.jobs(block) == ["item-1"]
    status = await batch.status()
    assert await status.pending() == 1
    assert await status.total() == 1

    await engine.report_success(batch.bid, "item-1")
    await engine.report_success(batch.bid, "item-1")

    assert [event for event, _, _ in recorder.calls] == ["complete"]
    assert await status.pending() == 0


@pytest.mark.asyncio
async def test_reattached_batch_counts_known_ids_once():
    engine, _ = make_engine()
    batch = engine.batch()

    async def first(ctx):
        await ctx.add("item-1")

    async def second(ctx):
        await ctx.add("item-1")
        await ctx.add("item-2")

    await batch.jobs(first)
    await engine.batch(batch.bid).jobs(second)

    status = engine.status(batch.bid)
    assert await status.total() == 2
    assert await status.pending() == 2


@pytest.mark.asyncio
async def test_batch_stays_pending_while_block_runs():
    engine, recorder = make_engine(push_interval=0)
    batch = engine.batch()
    await batch.on("complete", "rec")
    seen = []

    async def block(ctx):
        item_id = await ctx.add()
        await engine.report_success(batch.bid, item_id)
        seen.append(await engine.status(batch.bid).pending())
        seen.append(list(recorder.calls))

    await batch.jobs(block)

    assert seen == [1, []]
    assert [event for event, _, _ in recorder.calls] == ["complete"]


# ---------------------------------------------------------------------------
# Empty batches
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_empty_batch_fires_complete_then_success():
    engine, recorder = make_engine()
    batch = engine.batch()
    await batch.on("complete", "rec")
    await batch.on("success", "rec")

    assert await batch.jobs(no_items) == []

    assert [event for event, _, _ in recorder.calls] == ["complete", "success"]
    status = engine.status(batch.bid)
    assert await status.pending() == 0
    assert await status.total() == 0


@pytest.mark.asyncio
async def test_empty_batch_without_callbacks_dispatches_nothing():
    engine, _ = make_engine()
    batch = engine.batch()

    await batch.jobs(no_items)

    assert await engine.store.get(processed_key(batch.bid, "complete")) is None
    assert await engine.store.hget(batch_key(batch.bid), "pending") == "0"


@pytest.mark.asyncio
async def test_empty_reattached_batch_keeps_its_counts():
    engine, _ = make_engine()
    batch = engine.batch()

    async def block(ctx):
        await ctx.add()
        await ctx.add()

    await batch.jobs(block)
    await engine.batch(batch.bid).jobs(no_items)

    assert await engine.status(batch.bid).pending() == 2


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------


async def make_family(engine):
    """Parent with two items and one child with two items."""
    parent = engine.batch()
    await parent.on("complete", "rec", {"name": "parent"})
    await parent.on("success", "rec", {"name": "parent"})
    parent_items = []
    child_items = []
    children = []

    async def parent_block(ctx):
        parent_items.append(await ctx.add())
        parent_items.append(await ctx.add())
        child = ctx.new_batch()
        await child.on("success", "rec", {"name": "child"})

        async def child_block(child_ctx):
            child_items.append(await child_ctx.add())
            child_items.append(await child_ctx.add())

        await child.jobs(child_block)
        children.append(child)

    await parent.jobs(parent_block)
    return parent, children[0], parent_items, child_items


def names(recorder):
    return [(event, opts["name"]) for event, _, opts in recorder.calls]


@pytest.mark.asyncio
async def test_child_is_linked_to_parent():
    engine, _ = make_engine()
    parent, child, _, _ = await make_family(engine)

    assert await child.parent_bid() == parent.bid
    assert (await child.parent()).bid == parent.bid
    assert await parent.parent() is None
    parent_status = engine.status(parent.bid)
    assert await parent_status.child_count() == 1
    assert await parent_status.total() == 4
    assert await parent_status.pending() == 2


@pytest.mark.asyncio
async def test_parent_waits_for_child_success():
    engine, recorder = make_engine()
    parent, child, parent_items, child_items = await make_family(engine)

    for item_id in parent_items:
        await engine.report_success(parent.bid, item_id)
    assert recorder.calls == []

    for item_id in child_items:
        await engine.report_success(child.bid, item_id)

    assert names(recorder) == [
        ("success", "child"),
        ("complete", "parent"),
        ("success", "parent"),
    ]


@pytest.mark.asyncio
async def test_child_failure_propagates_and_retry_reverses_it():
    engine, recorder = make_engine()
    parent, child, parent_items, child_items = await make_family(engine)

    await engine.report_success(child.bid, child_items[0])
    await engine.report_failure(child.bid, child_items[1])
    assert await engine.status(parent.bid).pending() == 3
    assert await engine.status(parent.bid).failure_info() == [child_items[1]]

    for item_id in parent_items:
        await engine.report_success(parent.bid, item_id)

    assert names(recorder) == [("complete", "parent")]

    await engine.report_success(child.bid, child_items[1])

    assert await engine.status(parent.bid).pending() == 0
    assert await engine.status(parent.bid).failures() == 0
    assert names(recorder) == [
        ("complete", "parent"),
        ("success", "child"),
        ("success", "parent"),
    ]


@pytest.mark.asyncio
async def test_empty_child_resolves_in_parent():
    engine, recorder = make_engine()
    parent = engine.batch()
    await parent.on("success", "rec", {"name": "parent"})
    parent_items = []

    async def parent_block(ctx):
        parent_items.append(await ctx.add())
        await ctx.new_batch().jobs(no_items)

    await parent.jobs(parent_block)
    assert recorder.calls == []

    await engine.report_success(parent.bid, parent_items[0])

    assert names(recorder) == [("success", "parent")]


@pytest.mark.asyncio
async def test_child_resolving_inside_parent_block_waits_for_parent_items():
    engine, recorder = make_engine()
    parent = engine.batch()
    await parent.on("complete", "rec", {"name": "parent"})
    parent_items = []

    async def child_block(child_ctx):
        await child_ctx.add()

    async def parent_block(ctx):
        child = ctx.new_batch()
        child_items = await child.jobs(child_block)
        await engine.report_success(child.bid, child_items[0])
        parent_items.append(await ctx.add())

    await parent.jobs(parent_block)
    assert recorder.calls == []
    assert await engine.status(parent.bid).pending() == 1

    await engine.report_success(parent.bid, parent_items[0])

    assert names(recorder) == [("complete", "parent")]


@pytest.mark.asyncio
async def test_empty_child_before_parent_items_waits_for_them():
    engine, recorder = make_engine()
    parent = engine.batch()
    await parent.on("complete", "rec", {"name": "parent"})
    await parent.on("success", "rec", {"name": "parent"})
    parent_items = []

    async def parent_block(ctx):
        await ctx.new_batch().jobs(no_items)
        parent_items.append(await ctx.add())

    await parent.jobs(parent_block)
    assert recorder.calls == []

    await engine.report_success(parent.bid, parent_items[0])

    assert names(recorder) == [("complete", "parent"), ("success", "parent")]


@pytest.mark.asyncio
async def test_parent_of_only_children_resolves_after_its_block():
    engine, recorder = make_engine()
    parent = engine.batch()
    await parent.on("success", "rec", {"name": "parent"})

    async def parent_block(ctx):
        await ctx.new_batch().jobs(no_items)
        assert recorder.calls == []

    await parent.jobs(parent_block)

    assert names(recorder) == [("success", "parent")]


@pytest.mark.asyncio
async def test_grandparent_succeeds_after_leaf_retry():
    engine, recorder = make_engine()
    root = engine.batch()
    await root.on("complete", "rec", {"name": "root"})
    await root.on("success", "rec", {"name": "root"})
    leaves = []

    async def leaf_block(leaf_ctx):
        await leaf_ctx.add("leaf-item")

    async def middle_block(middle_ctx):
        leaf = middle_ctx.new_batch()
        await leaf.jobs(leaf_block)
        leaves.append(leaf)

    async def root_block(ctx):
        await ctx.new_batch().jobs(middle_block)

    await root.jobs(root_block)
    leaf = leaves[0]

    await engine.report_failure(leaf.bid, "leaf-item")
    assert names(recorder) == [("complete", "root")]

    await engine.report_success(leaf.bid, "leaf-item")
    assert names(recorder) == [("complete", "root"), ("success", "root")]


# ---------------------------------------------------------------------------
# Validity
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_invalidating_a_parent_invalidates_descendants():
    engine, _ = make_engine()
    parent, child, _, _ = await make_family(engine)
    other = engine.batch()

    assert await child.is_valid()

    await parent.invalidate_all()

    assert not await parent.is_valid()
    assert not await child.is_valid()
    assert await other.is_valid()


@pytest.mark.asyncio
async def test_context_reports_validity():
    engine, _ = make_engine()
    batch = engine.batch()
    seen = []

    async def block(ctx):
        seen.append(await ctx.is_valid())
        await batch.invalidate_all()
        seen.append(await ctx.is_valid())

    await batch.jobs(block)

    assert seen == [True, False]
