"""Run a brand visibility audit from the command line."""

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path

from config import settings
from models.checkpoint import CheckpointStore
from services.generation import LLMAuditCollaborators
from services.keyword_planner import DataForSEOKeywordPlanner
from services.search import ModelRouter
from services.structured_completion import OpenAIStructuredClient
from workers.pipeline import AuditConfig, AuditPipeline, StageConfig
from workers.retry import CancelToken, OperationCancelledError

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit brand visibility in AI search answers")
    parser.add_argument("--brand", required=True)
    parser.add_argument("--sector", required=True)
    parser.add_argument("--language", default="en", help="Language code for keywords and prompts")
    parser.add_argument("--country", default=None, help="Country code for keyword metrics and search")
    parser.add_argument(
        "--model",
        dest="models",
        action="append",
        help="Audit model, e.g. google/ai-overview, google/ai-mode or openai/gpt-4.1 (repeatable)",
    )
    parser.add_argument("--personas", type=int, default=5)
    parser.add_argument("--no-ideas", action="store_true", help="Only fetch metrics for seed keywords")
    parser.add_argument("--sample-size", type=int, default=settings.sample_size)
    parser.add_argument("--no-sample", action="store_true")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--checkpoint", default=settings.checkpoint_path)
    parser.add_argument("--wizard-export", default=None, help="Context exported from the setup wizard")
    parser.add_argument("--output", "-o", default="audit.json")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    cancel = CancelToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
    except NotImplementedError:
        pass

    config = AuditConfig(
        brand=args.brand,
        sector=args.sector,
        language_code=args.language,
        models=tuple(args.models or ("google/ai-overview",)),
        country_code=args.country,
        num_personas=args.personas,
        generate_ideas_from_seeds=not args.no_ideas,
    )
    stages = StageConfig(
        sample_size=None if args.no_sample else args.sample_size,
        checkpoint_path=args.checkpoint,
        wizard_export_path=args.wizard_export,
        seed=args.seed,
    )

    collaborators = LLMAuditCollaborators(
        completions=OpenAIStructuredClient(cancel=cancel),
        keyword_planner=DataForSEOKeywordPlanner(cancel=cancel),
        router=ModelRouter(cancel=cancel, language=args.language),
    )
    pipeline = AuditPipeline(collaborators, config, stages, CheckpointStore(stages.checkpoint_path), cancel)

    try:
        results = await pipeline.run()
    except OperationCancelledError:
        logger.warning("Audit cancelled, completed stages are kept in the checkpoint")
        return 130

    output = Path(args.output)
    output.write_text(json.dumps(results, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info(f"Wrote {len(results)} rows to {output}")
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=settings.log_level)
    return asyncio.run(run(args))


if __name__ == "__main__":
    raise SystemExit(main())
