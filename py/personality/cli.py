"""Command line entry point for building and scoring against the interest vector."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, List, Optional, cast

import click
import structlog

from .config import load_config
from .constants import INTEREST_VECTOR_FILENAME
from .history import JsonHistorySource
from .interest_store import InterestVectorStore
from .provider import PersonalityProvider
from .remote_settings import FileRemoteSettings


def setup_logging(state_dir: Path) -> structlog.BoundLogger:
    """
    Set up structured logging based on the PERSONALITY_LOG environment variable.

    Args:
        state_dir: Directory to store the log file when PERSONALITY_LOG is set to a level

    Returns:
        Configured structlog logger
    """
    personality_log = os.environ.get('PERSONALITY_LOG')

    processors: List[Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if personality_log:
        try:
            log_level = getattr(logging, personality_log.upper())
        except AttributeError:
            log_level = logging.INFO
            print(f"Warning: Invalid log level '{personality_log}', using INFO", file=sys.stderr)

        state_dir.mkdir(parents=True, exist_ok=True)
        processors.append(structlog.processors.JSONRenderer())
        logging.basicConfig(
            level=log_level,
            format='%(message)s',  # Let structlog handle formatting
            filename=str(state_dir / "personality.log"),
            filemode='a',
            force=True
        )
    else:
        # Default to stderr with ERROR level only; stdout carries command output
        processors.append(structlog.dev.ConsoleRenderer())
        logging.basicConfig(
            level=logging.ERROR,
            format='%(message)s',
            stream=sys.stderr,
            force=True
        )

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    return cast(structlog.BoundLogger, structlog.get_logger("personality"))


def build_provider(
    settings_dir: Path,
    state_dir: Path,
    config_path: Optional[Path],
    history_path: Optional[Path],
    logger: structlog.BoundLogger,
) -> PersonalityProvider:
    config = load_config(config_path)
    return PersonalityProvider(
        config.time_segments,
        config.parameter_sets,
        parameter_set_name=config.parameter_set,
        remote_settings=FileRemoteSettings(settings_dir),
        history=JsonHistorySource(history_path or state_dir / "history.json"),
        interest_vector_store=InterestVectorStore(state_dir / INTEREST_VECTOR_FILENAME),
        max_history_results=config.max_history_results,
        history_limit_secs=config.history_limit_secs,
        logger=logger,
    )


@click.group()
@click.option(
    '--settings-dir',
    type=click.Path(path_type=Path, file_okay=False),
    required=True,
    help='Directory mirroring the remote settings records (<key>.json)'
)
@click.option(
    '--state-dir',
    type=click.Path(path_type=Path, file_okay=False),
    required=True,
    help='Directory holding the persisted interest vector and logs'
)
@click.option(
    '--config',
    'config_path',
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help='JSON file with time segments and parameter sets'
)
@click.pass_context
def main(ctx: click.Context, settings_dir: Path, state_dir: Path, config_path: Optional[Path]) -> None:
    """Build interest vectors from history and score content against them."""
    logger = setup_logging(state_dir)
    ctx.obj = {
        "settings_dir": settings_dir,
        "state_dir": state_dir,
        "config_path": config_path,
        "logger": logger,
    }


@main.command()
@click.option(
    '--history',
    'history_path',
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    required=True,
    help='JSON export of browsing history entries'
)
@click.pass_obj
def build(obj: dict, history_path: Path) -> None:
    """Build, persist and print a fresh interest vector."""
    logger = obj["logger"]
    provider = build_provider(obj["settings_dir"], obj["state_dir"], obj["config_path"], history_path, logger)

    try:
        result = asyncio.run(provider.create_interest_vector())
    except Exception as e:
        logger.error("cli.build.error", error=str(e), exc_info=True)
        sys.exit(1)

    if not result.ok:
        click.echo(json.dumps({"error": result.reason.value, "history_count": result.history_count}), err=True)
        sys.exit(1)
    click.echo(json.dumps(result.interest_vector, indent=2, default=str))


@main.command()
@click.argument('items_path', type=click.Path(path_type=Path, dir_okay=False, exists=True))
@click.pass_obj
def score(obj: dict, items_path: Path) -> None:
    """Score every item in ITEMS_PATH (a JSON list) against the persisted vector."""
    logger = obj["logger"]
    provider = build_provider(obj["settings_dir"], obj["state_dir"], obj["config_path"], None, logger)

    with open(items_path, "r") as f:
        items = json.load(f)

    try:
        asyncio.run(provider.get_recipe_executor())
    except Exception as e:
        logger.error("cli.score.error", error=str(e), exc_info=True)
        sys.exit(1)

    if provider.interest_vector is None:
        logger.warning("cli.score.no_interest_vector", state_dir=str(obj["state_dir"]))

    output = [
        {"item": item, "score": provider.calculate_item_relevance_score(item)}
        for item in items
    ]
    click.echo(json.dumps(output, indent=2, default=str))


if __name__ == "__main__":
    main()
