"""Command line entry point for the probe."""

from __future__ import annotations

import asyncio
import logging
import random
import sys
from typing import Optional, Sequence

from .config import ProbeConfig, parse_config, resolve_quote_file
from .errors import ConfigError, QuoteCorpusError
from .probe import LAG_LOGGER
from .quotes import QuoteCorpus
from .runner import ProbeRunner
from .transport import create_transport

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


def configure_logging(config: ProbeConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    if config.lag_log_file:
        handler = logging.FileHandler(config.lag_log_file, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(message)s"))
        LAG_LOGGER.addHandler(handler)


def load_corpus(config: ProbeConfig) -> QuoteCorpus:
    corpus = QuoteCorpus.load(resolve_quote_file(config.quote_file))
    if not corpus:
        logging.warning("quote file %s has no entries; ambient speech disabled", corpus.source)
    return corpus


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        config = parse_config(argv)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    configure_logging(config)
    try:
        corpus = load_corpus(config)
    except QuoteCorpusError as exc:
        logging.error("%s", exc)
        return 1

    rng = random.Random(config.seed)
    try:
        transport = create_transport(config)
        runner = ProbeRunner(config, transport, corpus, rng)
        return asyncio.run(runner.run())
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pylint: disable=broad-except
        logging.error("fatal: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
