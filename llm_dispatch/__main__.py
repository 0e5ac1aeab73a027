"""
Run one extraction from the command line.

Usage:
    python -m llm_dispatch extract --treatment tuned --batch-index 3 < page.txt
    llm-dispatch determine --prompt-file prompt.txt

Prints the ExtractionResult as JSON; exits 1 when the extraction failed.
"""

import argparse
import asyncio
import json
import logging
import sys

from llm_dispatch.core.logging import setup_logging
from llm_dispatch.gateway.errors import ConfigurationError
from llm_dispatch.gateway.service import ExtractionService
from llm_dispatch.gateway.types import ModelTreatment

logger = logging.getLogger("llm_dispatch")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="llm-dispatch", description=__doc__.strip().splitlines()[0])
    parser.add_argument("task_type", help="Task profile name, e.g. extract")
    parser.add_argument(
        "--treatment",
        choices=[t.value for t in ModelTreatment],
        default=ModelTreatment.NON_TUNED.value,
    )
    parser.add_argument("--batch-index", type=int, default=0)
    parser.add_argument("--prompt-file", help="Read the prompt from this file instead of stdin")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, prompt: str) -> int:
    service = ExtractionService()
    result = await service.run(args.task_type, prompt, ModelTreatment(args.treatment), args.batch_index)
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    return 0 if result.success else 1


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    args = parse_args(argv)

    if args.prompt_file:
        with open(args.prompt_file, encoding="utf-8") as f:
            prompt = f.read()
    else:
        prompt = sys.stdin.read()

    try:
        return asyncio.run(run(args, prompt))
    except ConfigurationError as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
