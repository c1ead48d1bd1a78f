"""Command-line interface for ingesting video transcripts."""

import argparse
import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any

from src.utils.clients import build_cost_tracker, build_stores
from src.utils.formatting import format_cost
from src.utils.logging import get_logger

from .chunking_service import ChunkingService, get_chunking_stats
from .config import RAGConfig, get_config
from .pipeline import VideoIngestionPipeline
from .schemas import TranscriptSegment, VideoRecord

logger = get_logger(__name__)


def load_segments(path: Path) -> list[TranscriptSegment]:
    """Read transcript segments from a JSON file.

    Accepts a list of segments or an object with a ``segments`` list. Each
    segment has ``text`` and either ``start_time``/``end_time`` or
    ``start``/``duration``, all in seconds.
    """
    payload: Any = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("segments", [])

    segments = []
    for item in payload:
        if "start_time" in item:
            start, end = float(item["start_time"]), float(item["end_time"])
        else:
            start = float(item["start"])
            end = start + float(item.get("duration", 0))
        segments.append(TranscriptSegment(text=item["text"], start_time=start, end_time=end))
    return segments


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Video Chat Ingestion - Chunk, embed and index a video transcript",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Index a transcript for a creator
  python -m src.rag_pipeline.cli transcript.json --video-id vid_123 \\
      --creator-id creator_1 --title "Pricing your first offer"

  # Chunk only, nothing is embedded or stored
  python -m src.rag_pipeline.cli transcript.json --video-id vid_123 \\
      --creator-id creator_1 --title "Pricing" --dry-run

  # Remove a video and its chunks
  python -m src.rag_pipeline.cli --delete --video-id vid_123 --creator-id creator_1
        """,
    )

    parser.add_argument("transcript", nargs="?", type=Path, help="Transcript JSON file")
    parser.add_argument("--video-id", required=True, help="Video identifier")
    parser.add_argument("--creator-id", required=True, help="Owning creator")
    parser.add_argument("--title", help="Video title")
    parser.add_argument("--course-id", help="Course the video belongs to")
    parser.add_argument("--url", help="Public video URL used in citations")
    parser.add_argument(
        "--published-at",
        type=datetime.fromisoformat,
        help="Publication time, ISO 8601",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Dry run mode - chunk the transcript but don't embed or write to database",
    )
    parser.add_argument(
        "--delete",
        action="store_true",
        help="Delete the video and its chunks instead of ingesting",
    )
    return parser


async def main(argv: list[str] | None = None) -> int:
    """CLI entry point for transcript ingestion.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.delete and (args.transcript is None or not args.title):
        parser.error("transcript and --title are required unless --delete is given")

    config = get_config()
    logger.info(
        "cli_started",
        video_id=args.video_id,
        creator_id=args.creator_id,
        dry_run=args.dry_run,
        delete=args.delete,
    )

    # Display configuration
    print("\n" + "=" * 60)
    print("Video Chat Ingestion")
    print("=" * 60)
    print(f"Video ID: {args.video_id}")
    print(f"Creator ID: {args.creator_id}")
    print(f"Storage backend: {config.storage_backend}")
    print(f"Embedding provider: {config.embedding_provider}")
    print(f"Embedding model: {config.embedding_model}")
    print(f"Chunk size: {config.chunk_min_words}-{config.chunk_max_words} words")
    if args.dry_run:
        print("\n⚠️  DRY RUN MODE - No embeddings or database writes will occur")
    print("=" * 60 + "\n")

    if args.dry_run:
        return _dry_run(args, config)

    stores = build_stores(config)
    pipeline = VideoIngestionPipeline(
        stores.chunk_store,
        config=config,
        cost_tracker=build_cost_tracker(config, stores.ledger),
        cache=stores.cache,
    )

    try:
        if args.delete:
            await pipeline.delete_video(args.video_id, args.creator_id)
            print(f"✅ Deleted video {args.video_id}\n")
            return 0

        video = VideoRecord(
            id=args.video_id,
            creator_id=args.creator_id,
            course_id=args.course_id,
            title=args.title,
            url=args.url,
            published_at=args.published_at,
        )
        result = await pipeline.ingest_video(video, load_segments(args.transcript))
    except Exception as e:
        logger.exception("ingestion_failed", error_type=type(e).__name__)
        print(f"\n❌ Ingestion failed: {str(e)}")
        return 1

    # Display results
    print("\n" + "=" * 60)
    print("Ingestion Results")
    print("=" * 60)
    print(f"Chunks created: {result.chunks_created}")
    if result.stats and result.stats.total_chunks:
        print(f"Average words per chunk: {result.stats.avg_words_per_chunk}")
        print(f"Oversized chunks: {result.stats.oversized_chunks}")
    print(f"Embedding tokens: {result.embedding_tokens}")
    print(f"Embedding cost: {format_cost(result.embedding_cost)}")
    print("=" * 60 + "\n")

    logger.info(
        "cli_completed",
        video_id=result.video_id,
        chunks_created=result.chunks_created,
        embedding_tokens=result.embedding_tokens,
    )
    return 0


def _dry_run(args: argparse.Namespace, config: RAGConfig) -> int:
    if args.delete:
        print(f"Would delete video {args.video_id}\n")
        return 0

    chunks = ChunkingService(config.chunking_options).chunk_transcript(
        args.video_id, load_segments(args.transcript)
    )
    stats = get_chunking_stats(chunks)
    print(f"Chunks: {stats.total_chunks}")
    print(f"Words per chunk: {stats.min_words}-{stats.max_words} (avg {stats.avg_words_per_chunk})")
    print(f"Oversized chunks: {stats.oversized_chunks}\n")
    return 0


def run() -> None:
    """Console script entry point."""
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
