import json
from pathlib import Path
from typing import List, Optional

import typer
from boltindex.config import settings
from boltindex.core.logging import setup_logging, get_logger

# Initialize logging before anything else
setup_logging()
logger = get_logger(__name__)

app = typer.Typer(help="Bounded-memory chunking and bolted-embedding indexing.")


@app.command()
def version():
    """Show version."""
    from boltindex import __version__
    print(f"boltindex v{__version__}")


@app.command()
def chunk(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to chunk"),
    min_size: int = typer.Option(settings.chunk_min_size, help="Minimum chunk size in bytes"),
    max_size: int = typer.Option(settings.chunk_max_size, help="Maximum chunk size in bytes"),
    overlap: int = typer.Option(settings.chunk_overlap, help="Overlap between chunks in bytes"),
    show_content: bool = typer.Option(False, help="Include chunk text in the output"),
):
    """Split a file into overlapping chunks and print their line ranges as JSON."""
    from boltindex.core.errors import ChunkingError
    from boltindex.preprocessing import chunk_text
    from boltindex.utils.content import detect_language

    content = file.read_text(encoding="utf-8", errors="replace")
    try:
        chunks = chunk_text(
            content,
            min_size=min_size,
            max_size=max_size,
            overlap_bytes=overlap,
            source_id=file.as_posix(),
            language=detect_language(file.name),
        )
    except ChunkingError as e:
        logger.error("chunking_failed", file=str(file), error=str(e))
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    rows = []
    for c in chunks:
        row = {
            "index": c.index,
            "start_line": c.start_line,
            "end_line": c.end_line,
            "overlap_lines": c.overlap_lines,
            "bytes": c.byte_size,
        }
        if show_content:
            row["content"] = c.content
        rows.append(row)
    typer.echo(json.dumps(rows, indent=2))


@app.command()
def index(
    paths: List[Path] = typer.Argument(..., exists=True, help="Files or directories to index"),
    checkpoint: Optional[Path] = typer.Option(None, help="Checkpoint log path"),
    resume: bool = typer.Option(
        False, help="Skip inputs already listed in the checkpoint log; changed ones are re-indexed"
    ),
    extensions: Optional[List[str]] = typer.Option(None, "--ext", help="Only index these suffixes (e.g. .py)"),
    query: Optional[str] = typer.Option(None, help="Run a similarity query after indexing"),
    k: int = typer.Option(5, help="Number of query results"),
):
    """Index files and print the run summary."""
    import asyncio
    from boltindex.core.indexing.pipeline import create_default_pipeline
    from boltindex.utils.content import units_from_paths

    async def _run():
        pipeline = create_default_pipeline(
            checkpoint_path=str(checkpoint) if checkpoint else None,
        )
        if not resume and pipeline.checkpoint is not None:
            pipeline.checkpoint.clear()

        units = units_from_paths(paths, extensions)
        logger.info("index_cli_started", inputs=len(units), resume=resume)
        summary = await pipeline.run(units)

        output = {"summary": summary.model_dump(mode="json")}
        if query:
            vector = pipeline.generator.embed_text(query)
            output["results"] = [
                {"id": r.id, "score": round(r.score, 4), **r.metadata}
                for r in pipeline.index.query(vector, k=k)
            ]
        typer.echo(json.dumps(output, indent=2))
        if summary.cancelled:
            raise typer.Exit(code=130)

    asyncio.run(_run())


if __name__ == "__main__":
    app()
