"""
Tests for PipelineOrchestrator.

Tests:
- End-to-end run over file, function and module units
- Checkpoint written per committed batch, resume skips completed inputs
- Resume after a simulated crash reproduces the uninterrupted state
- Changed inputs are re-indexed in place, stale entries and edges dropped
- Units sharing a path and empty units
- Cancellation commits nothing from the interrupted batch
- Per-unit failures, degraded embeddings and unresolved edges in the summary
- Memory-driven batch sizing
"""
import numpy as np
import pytest

from boltindex.core.indexing import (
    CheckpointLog,
    PipelineOrchestrator,
    RelationshipGraphStore,
    VectorIndexStore,
    create_default_pipeline,
    next_batch_size,
)
from boltindex.core.memory import MemoryMonitor
from boltindex.embedding.features import EdgeDiscoverer, LanguageRegistry
from boltindex.schema import ContentUnit, EdgeFact, EdgeKind, Granularity, GraphName, GraphNode, NodeKind
from boltindex.utils.content import InMemoryContentSource, content_fingerprint
from conftest import FakeLLM, FakeProbe, TEST_DIMENSION, make_generator


# ============================================================================
# Helpers
# ============================================================================

def source_file(name: str, lines: int = 60) -> str:
    body = [f"# module {name}"]
    for i in range(lines):
        body.append(f"def {name}_{i}(x):  return helper_{i % 7}(x) + {i}")
    return "\n".join(body) + "\n"


def import_fact(a: str, b: str) -> EdgeFact:
    return EdgeFact(
        source=GraphNode(id=a, kind=NodeKind.FILE),
        target=GraphNode(id=b, kind=NodeKind.FILE),
        kind=EdgeKind.IMPORT,
    )


def make_units():
    units = []
    for i in range(6):
        path = f"src/pkg/file_{i}.py"
        edges = [import_fact(path, f"src/pkg/file_{(i + 1) % 6}.py")]
        units.append(ContentUnit(
            id=path,
            path=path,
            language="python",
            content=source_file(f"f{i}", lines=40 + i * 5),
            edges=edges,
        ))
    units.append(ContentUnit(
        id="fn:pkg.helper",
        path="src/pkg/file_0.py::helper",
        granularity=Granularity.FUNCTION,
        language="python",
        content="def helper(x):\n    return x * 2\n",
    ))
    units.append(ContentUnit(
        id="mod:pkg",
        path="src/pkg",
        granularity=Granularity.MODULE,
        language="python",
        content="from . import file_0, file_1\n__all__ = ['file_0', 'file_1']\n",
    ))
    return units


def make_pipeline(tmp_path=None, llm=None, index=None, graphs=None, checkpoint=None, probe=None, **kwargs):
    monitor = MemoryMonitor(min_interval=0.0, probe=probe or FakeProbe(0))
    generator = make_generator(llm or FakeLLM(), registry=kwargs.pop("registry", None))
    if checkpoint is None and tmp_path is not None:
        checkpoint = CheckpointLog(tmp_path / "checkpoints.jsonl", fsync=False)
    kwargs.setdefault("batch_size", 3)
    kwargs.setdefault("chunk_min_size", 200)
    kwargs.setdefault("chunk_max_size", 600)
    kwargs.setdefault("chunk_overlap", 60)
    kwargs.setdefault("memory_target", 10_000)
    kwargs.setdefault("memory_ceiling", 10_000)
    return PipelineOrchestrator(
        generator=generator,
        index=index if index is not None else VectorIndexStore(dimension=TEST_DIMENSION),
        graphs=graphs if graphs is not None else RelationshipGraphStore(),
        checkpoint=checkpoint,
        monitor=monitor,
        **kwargs,
    )


def index_state(index: VectorIndexStore):
    return {
        entry_id: (entry.combined.tobytes(), entry.metadata["path"], entry.degraded)
        for entry_id, entry in index.snapshot.entries.items()
    }


def graph_state(graphs: RelationshipGraphStore):
    g = graphs.graph(GraphName.COMBINED)
    return sorted(g.nodes), sorted((u, v, k) for u, v, k in g.edges(keys=True))


# ============================================================================
# Runs
# ============================================================================

class TestRun:

    @pytest.mark.asyncio
    async def test_end_to_end(self, tmp_path):
        pipeline = make_pipeline(tmp_path)
        units = make_units()

        summary = await pipeline.run(units)

        assert summary.total_inputs == 8
        assert summary.completed == 8
        assert summary.failed == []
        assert summary.cancelled is False
        assert summary.batches == 3
        assert summary.edges_added == 6
        assert summary.unresolved_edges == 0
        assert summary.embeddings_indexed == len(pipeline.index)

        stats = pipeline.index.stats()
        assert stats["by_granularity"]["file"] == 6
        assert stats["by_granularity"]["chunk"] > 6
        assert stats["by_granularity"]["function"] == 1
        assert stats["by_granularity"]["module"] == 1

    @pytest.mark.asyncio
    async def test_results_are_queryable(self, tmp_path):
        pipeline = make_pipeline(tmp_path)
        await pipeline.run(make_units())

        query = pipeline.generator.embed_text("def helper(x): return x", language="python")
        results = pipeline.index.query(query, k=5, filters={"language": "python"}, granularity=Granularity.FILE)

        assert len(results) == 5
        assert all(r.metadata["granularity"] == "file" for r in results)

    @pytest.mark.asyncio
    async def test_graph_built_from_edge_facts(self, tmp_path):
        pipeline = make_pipeline(tmp_path)
        await pipeline.run(make_units())

        analysis = pipeline.graphs.analyze(GraphName.FILE_DEPENDENCY)

        # file_0 -> file_1 -> ... -> file_5 -> file_0
        assert len(analysis.cycles) == 1
        assert len(analysis.cycles[0]) == 6

    @pytest.mark.asyncio
    async def test_reads_content_from_source(self):
        source = InMemoryContentSource({"docs/readme.md": "# Title\n\nSome text.\n"})
        pipeline = make_pipeline(content_source=source)

        summary = await pipeline.run([ContentUnit(id="readme", path="docs/readme.md")])

        assert summary.completed == 1
        assert pipeline.index.has_source("docs/readme.md")
        entry = next(iter(pipeline.index.snapshot.entries.values()))
        assert entry.language == "markdown"
        assert entry.content_type == "document"

    @pytest.mark.asyncio
    async def test_duplicate_unit_ids_processed_once(self, tmp_path):
        pipeline = make_pipeline(tmp_path)
        unit = make_units()[0]

        summary = await pipeline.run([unit, unit])

        assert summary.total_inputs == 1
        assert summary.completed == 1

    @pytest.mark.asyncio
    async def test_discoverer_registry(self, tmp_path):
        class ImportLineDiscoverer(EdgeDiscoverer):
            def discover(self, unit, content):
                for line in content.splitlines():
                    if line.startswith("from . import"):
                        for name in line.split("import", 1)[1].split(","):
                            yield EdgeFact(
                                source=GraphNode(id=unit.id, kind=NodeKind.MODULE),
                                target=GraphNode(id=f"mod:pkg.{name.strip()}", kind=NodeKind.MODULE),
                                kind=EdgeKind.MODULE_DEPENDENCY,
                            )

        registry = LanguageRegistry()
        registry.register("python", discoverer=ImportLineDiscoverer())
        pipeline = make_pipeline(tmp_path, registry=registry)

        await pipeline.run([make_units()[-1]])

        assert pipeline.graphs.neighbors("mod:pkg", "outgoing", GraphName.MODULE_DEPENDENCY) == [
            "mod:pkg.file_0", "mod:pkg.file_1",
        ]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("batch_size", [1, 4])
    async def test_units_sharing_a_path_are_indexed_separately(self, tmp_path, batch_size):
        units = [
            ContentUnit(
                id=f"util.{name}",
                path="src/pkg/util.py",
                granularity=Granularity.FUNCTION,
                language="python",
                content=f"def {name}(x):\n    return x + {i}\n",
            )
            for i, name in enumerate(["foo", "bar"])
        ]
        pipeline = make_pipeline(tmp_path, batch_size=batch_size)

        summary = await pipeline.run(units)

        assert summary.completed == 2
        assert summary.failed == []
        assert len(pipeline.index) == 2
        assert pipeline.index.has_unit("util.foo")
        assert pipeline.index.has_unit("util.bar")

    @pytest.mark.asyncio
    async def test_empty_unit_completes_without_embeddings(self, tmp_path):
        source = InMemoryContentSource({"src/pkg/__init__.py": "", "src/pkg/a.py": "x = 1\n"})
        pipeline = make_pipeline(tmp_path, content_source=source)
        units = [
            ContentUnit(id="src/pkg/__init__.py", path="src/pkg/__init__.py"),
            ContentUnit(id="src/pkg/a.py", path="src/pkg/a.py"),
            ContentUnit(id="fn:empty", path="src/pkg/a.py::empty", granularity=Granularity.FUNCTION, content=""),
        ]

        summary = await pipeline.run(units)

        assert summary.completed == 3
        assert summary.failed == []
        assert not pipeline.index.has_unit("src/pkg/__init__.py")
        assert not pipeline.index.has_unit("fn:empty")
        assert pipeline.checkpoint.completed_ids() == {u.id for u in units}

        again = await make_pipeline(tmp_path, content_source=source).run(units)

        assert again.skipped == 3
        assert again.reindexed == 0


# ============================================================================
# Checkpoints and resume
# ============================================================================

class TestResume:

    @pytest.mark.asyncio
    async def test_checkpoint_per_batch(self, tmp_path):
        pipeline = make_pipeline(tmp_path)

        await pipeline.run(make_units())

        records = list(pipeline.checkpoint.records())
        assert [r.batch_id for r in records] == [1, 2, 3]
        assert sum(len(r.completed_input_ids) for r in records) == 8
        assert records[-1].index_snapshot_id == pipeline.index.snapshot_id
        assert records[-1].graph_snapshot_id == pipeline.graphs.snapshot_id

    @pytest.mark.asyncio
    async def test_second_run_skips_everything(self, tmp_path):
        first = make_pipeline(tmp_path)
        await first.run(make_units())
        llm = FakeLLM()
        second = make_pipeline(tmp_path, llm=llm, index=first.index, graphs=first.graphs)

        summary = await second.run(make_units())

        assert summary.skipped == 8
        assert summary.completed == 0
        assert llm.calls == 0

    @pytest.mark.asyncio
    async def test_resume_after_crash_matches_uninterrupted_run(self, tmp_path, mocker):
        units = make_units()

        reference = make_pipeline(tmp_path / "reference")
        await reference.run(units)

        # Crash right after the second batch committed, before its checkpoint
        index = VectorIndexStore(dimension=TEST_DIMENSION)
        graphs = RelationshipGraphStore()
        log = CheckpointLog(tmp_path / "crash" / "checkpoints.jsonl", fsync=False)
        crashing = make_pipeline(index=index, graphs=graphs, checkpoint=log)
        original = log.record_batch
        calls = {"n": 0}

        def crash_on_second(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OSError("disk full")
            return original(*args, **kwargs)

        mocker.patch.object(log, "record_batch", side_effect=crash_on_second)
        with pytest.raises(OSError):
            await crashing.run(units)
        mocker.stopall()

        assert len(log.completed_ids()) == 3

        resumed = make_pipeline(index=index, graphs=graphs, checkpoint=log)
        summary = await resumed.run(units)

        assert summary.skipped == 3
        assert summary.completed == 5
        assert summary.failed == []
        assert index_state(index) == index_state(reference.index)
        assert graph_state(graphs) == graph_state(reference.graphs)
        assert log.completed_ids() == {u.id for u in units}


class TestReindex:

    @pytest.mark.asyncio
    async def test_changed_unit_is_reindexed_in_place(self, tmp_path):
        units = make_units()
        first = make_pipeline(tmp_path)
        await first.run(units)
        assert len(first.index.unit_entries("src/pkg/file_0.py")) > 2

        changed = units[0].model_copy(update={"content": "x = 1\n", "edges": []})
        second = make_pipeline(tmp_path, index=first.index, graphs=first.graphs)
        summary = await second.run([changed] + units[1:])

        assert summary.reindexed == 1
        assert summary.skipped == 7
        assert summary.completed == 1
        assert summary.failed == []
        owned = second.index.unit_entries("src/pkg/file_0.py")
        assert sorted(second.index.get(i).granularity.value for i in owned) == ["chunk", "file"]
        hits = second.index.query(np.ones(TEST_DIMENSION), k=100, filters={"path_prefix": "src/pkg/file_0.py"})
        # The prefix also matches the helper function unit inside file_0
        assert {h.id for h in hits if h.metadata["path"] == "src/pkg/file_0.py"} == owned
        file_graph = second.graphs.graph(GraphName.FILE_DEPENDENCY)
        assert not file_graph.has_edge("src/pkg/file_0.py", "src/pkg/file_1.py")
        assert file_graph.has_edge("src/pkg/file_5.py", "src/pkg/file_0.py")
        assert second.checkpoint.fingerprints()["src/pkg/file_0.py"] == content_fingerprint("x = 1\n")

    @pytest.mark.asyncio
    async def test_third_run_after_reindex_skips_everything(self, tmp_path):
        units = make_units()
        first = make_pipeline(tmp_path)
        await first.run(units)
        units[0] = units[0].model_copy(update={"content": "x = 1\n"})
        await make_pipeline(tmp_path, index=first.index, graphs=first.graphs).run(units)
        llm = FakeLLM()

        summary = await make_pipeline(tmp_path, llm=llm, index=first.index, graphs=first.graphs).run(units)

        assert summary.skipped == 8
        assert summary.reindexed == 0
        assert llm.calls == 0

    @pytest.mark.asyncio
    async def test_change_detection_can_be_disabled(self, tmp_path):
        units = make_units()
        first = make_pipeline(tmp_path)
        await first.run(units)
        units[0] = units[0].model_copy(update={"content": "x = 1\n"})

        summary = await make_pipeline(
            tmp_path, index=first.index, graphs=first.graphs, reindex_changed=False,
        ).run(units)

        assert summary.skipped == 8
        assert summary.reindexed == 0
        assert len(first.index.unit_entries("src/pkg/file_0.py")) > 2

    @pytest.mark.asyncio
    async def test_unreadable_logged_unit_fails_and_keeps_entries(self, tmp_path):
        unit = ContentUnit(id="a", path="a.py")
        first = make_pipeline(tmp_path, content_source=InMemoryContentSource({"a.py": "x = 1\n"}))
        await first.run([unit])

        second = make_pipeline(
            tmp_path, index=first.index, graphs=first.graphs, content_source=InMemoryContentSource({}),
        )
        summary = await second.run([unit])

        assert summary.reindexed == 1
        assert [f.error_type for f in summary.failed] == ["FileNotFoundError"]
        assert second.index.has_unit("a")


# ============================================================================
# Cancellation
# ============================================================================

class CancellingLLM(FakeLLM):
    """Cancels the pipeline from inside the N-th generative call."""

    def __init__(self, cancel_on_call: int, **kwargs):
        super().__init__(delay=0.05, **kwargs)
        self.cancel_on_call = cancel_on_call
        self.pipeline = None

    async def generate(self, prompt: str) -> str:
        if self.calls + 1 == self.cancel_on_call:
            self.pipeline.cancel("test shutdown")
        return await super().generate(prompt)


def function_units(count: int):
    return [
        ContentUnit(
            id=f"fn:{i}",
            path=f"lib.py::fn_{i}",
            granularity=Granularity.FUNCTION,
            language="python",
            content=f"def fn_{i}(a):\n    return a + {i}\n",
            edges=[EdgeFact(
                source=GraphNode(id=f"fn:{i}", kind=NodeKind.FUNCTION),
                target=GraphNode(id=f"fn:{i + 1}", kind=NodeKind.FUNCTION),
                kind=EdgeKind.CALL,
            )],
        )
        for i in range(count)
    ]


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_mid_batch_discards_batch(self, tmp_path):
        llm = CancellingLLM(cancel_on_call=3)
        pipeline = make_pipeline(tmp_path, llm=llm, batch_size=2)
        llm.pipeline = pipeline

        summary = await pipeline.run(function_units(6))

        assert summary.cancelled is True
        assert summary.completed == 2
        assert len(pipeline.index) == 2
        assert {e.path for e in pipeline.index.snapshot.entries.values()} == {"lib.py::fn_0", "lib.py::fn_1"}
        assert pipeline.graphs.stats()["function_call"]["edges"] == 2
        assert pipeline.checkpoint.completed_ids() == {"fn:0", "fn:1"}
        # Nothing from the third batch ever reached the model
        assert llm.calls <= 4
        assert not any("fn_4" in p or "fn_5" in p for p in llm.prompts)

    @pytest.mark.asyncio
    async def test_cancel_before_run(self, tmp_path):
        llm = FakeLLM()
        pipeline = make_pipeline(tmp_path, llm=llm)
        pipeline.cancel()

        summary = await pipeline.run(function_units(3))

        assert summary.cancelled is True
        assert summary.completed == 0
        assert llm.calls == 0
        assert pipeline.index.snapshot_id == 0
        assert pipeline.checkpoint.latest() is None


# ============================================================================
# Failures
# ============================================================================

class TestFailures:

    @pytest.mark.asyncio
    async def test_unit_failure_is_recorded_and_not_checkpointed(self, tmp_path):
        source = InMemoryContentSource({"ok.py": "x = 1\n"})
        pipeline = make_pipeline(tmp_path, content_source=source)

        summary = await pipeline.run([
            ContentUnit(id="ok", path="ok.py"),
            ContentUnit(id="missing", path="missing.py"),
            ContentUnit(id="binary", path="bin.dat", content="abc\x00def"),
        ])

        assert summary.completed == 1
        failures = {f.input_id: f.error_type for f in summary.failed}
        assert failures == {"missing": "FileNotFoundError", "binary": "FeatureExtractionError"}
        assert pipeline.checkpoint.completed_ids() == {"ok"}

    @pytest.mark.asyncio
    async def test_degraded_embeddings_are_counted(self, tmp_path):
        pipeline = make_pipeline(tmp_path, llm=FakeLLM(always_fail=True))

        summary = await pipeline.run(function_units(3))

        assert summary.completed == 3
        assert summary.degraded_embeddings == 3
        assert pipeline.index.stats()["degraded"] == 3

    @pytest.mark.asyncio
    async def test_unresolved_edges_are_counted(self, tmp_path):
        pipeline = make_pipeline(tmp_path)
        bad = ContentUnit(
            id="fn:x",
            path="x.py::x",
            granularity=Granularity.FUNCTION,
            content="def x():\n    pass\n",
            edges=[
                # "x.py" arrives as a file first, then as a function
                import_fact("x.py", "y.py"),
                EdgeFact(
                    source=GraphNode(id="fn:x", kind=NodeKind.FUNCTION),
                    target=GraphNode(id="x.py", kind=NodeKind.FUNCTION),
                    kind=EdgeKind.CALL,
                ),
            ],
        )

        summary = await pipeline.run([bad])

        assert summary.completed == 1
        assert summary.edges_added == 1
        assert summary.unresolved_edges == 1
        assert pipeline.graphs.node_kind("fn:x") is None


# ============================================================================
# Batch sizing
# ============================================================================

class TestBatchSizing:

    def test_next_batch_size_policy(self):
        assert next_batch_size(8, peak_bytes=2000, ceiling_bytes=1000, max_batch_size=64) == 4
        assert next_batch_size(1, peak_bytes=2000, ceiling_bytes=1000, max_batch_size=64) == 1
        assert next_batch_size(8, peak_bytes=100, ceiling_bytes=1000, max_batch_size=64) == 12
        assert next_batch_size(1, peak_bytes=100, ceiling_bytes=1000, max_batch_size=64) == 2
        assert next_batch_size(60, peak_bytes=100, ceiling_bytes=1000, max_batch_size=64) == 64
        assert next_batch_size(8, peak_bytes=700, ceiling_bytes=1000, max_batch_size=64) == 8

    @pytest.mark.asyncio
    async def test_memory_pressure_shrinks_batches(self, tmp_path):
        pipeline = make_pipeline(
            tmp_path, probe=FakeProbe(5000), batch_size=4, memory_ceiling=1000, memory_target=1000,
        )

        summary = await pipeline.run(function_units(8))

        # 4, then 2, then 1 and 1
        assert summary.batches == 4
        assert summary.peak_memory_bytes == 5000
        assert summary.completed == 8

    @pytest.mark.asyncio
    async def test_headroom_grows_batches(self, tmp_path):
        pipeline = make_pipeline(tmp_path, batch_size=1, max_batch_size=100)

        summary = await pipeline.run(function_units(10))

        # 1, 2, 3, 4
        assert summary.batches == 4


# ============================================================================
# Factory
# ============================================================================

def test_create_default_pipeline(tmp_path, mocker):
    from boltindex.utils.embeddings import reset_embedding_service_singleton

    reset_embedding_service_singleton()
    model = mocker.MagicMock()
    model.embed.side_effect = lambda texts: [np.full(12, 0.5) for _ in texts]
    mocker.patch("boltindex.utils.embeddings.TextEmbedding", return_value=model)
    mocker.patch("boltindex.utils.llm_client.ChatOpenAI")

    pipeline = create_default_pipeline(checkpoint_path=str(tmp_path / "cp.jsonl"))

    assert pipeline.generator.dimension == 12
    assert pipeline.index.dimension == 12
    assert pipeline.checkpoint.path == tmp_path / "cp.jsonl"
    reset_embedding_service_singleton()
