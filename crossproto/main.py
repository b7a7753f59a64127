"""Command line entry point for the cross-protocol orchestrator."""

import asyncio
import json
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from loguru import logger

from .api import OrchestrationService
from .config import Config, LoggingConfig, get_config


def setup_logging(config: LoggingConfig, level: str = None) -> None:
    """Configure loguru sinks."""
    logger.remove()
    logger.add(sys.stderr, level=level or config.level,
               format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
                      "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>")
    if config.log_file:
        logger.add(config.log_file, level="DEBUG", serialize=config.json_format,
                   format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}")


def load_config(config_path: str) -> Config:
    if Path(config_path).exists():
        return get_config(config_path)
    logger.warning(f"Config file {config_path} not found, using defaults")
    return Config()


@click.group()
def cli():
    """Cross-protocol orchestration CLI."""
    load_dotenv()


@cli.command()
@click.argument('operation')
@click.option('--request', 'request_file', type=click.Path(exists=True), required=True,
              help='JSON file with the request body')
@click.option('--config', default='config.yaml', help='Path to config file')
@click.option('--timeout-ms', type=int, default=None, help='Deadline for the whole operation')
@click.option('--log-level', default=None, help='Override the configured log level')
def run(operation, request_file, config, timeout_ms, log_level):
    """Run OPERATION with the request in --request and print the JSON response."""
    cfg = load_config(config)
    setup_logging(cfg.logging, log_level)

    with open(request_file, "r") as f:
        request = json.load(f)

    service = OrchestrationService.from_config(cfg)
    try:
        response = asyncio.run(service.handle(operation, request, timeout_ms=timeout_ms))
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        sys.exit(130)

    click.echo(json.dumps(response, indent=2))
    if not response["success"]:
        sys.exit(1)


@cli.command()
@click.option('--config', default='config.yaml', help='Path to config file')
def operations(config):
    """List the supported operation names."""
    logger.remove()
    logger.add(sys.stderr, level="WARNING")
    service = OrchestrationService.from_config(load_config(config))
    for name in service.operations():
        click.echo(name)


if __name__ == "__main__":
    cli()
