"""Main application entry point for the realtime voice bridge."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI

from app.ai.duplex_base import RealtimeClient
from app.ai.mock_duplex import MockRealtimeClient
from app.ai.openai_realtime import OpenAIRealtimeClient
from app.config import Config, config
from app.core.agent_config import AgentConfig
from app.server import create_app


def setup_logging(cfg: Config = config) -> None:
    """Configure structured logging, optionally with file output."""
    log_level = getattr(logging, cfg.system.log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    log_file: Optional[Path] = None
    if cfg.system.log_dir:
        log_dir = Path(cfg.system.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        # Generate log filename with timestamp
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"voice-bridge_{timestamp}.log"
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    # Configure root logger
    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        handlers=handlers,
        force=True
    )

    # Configure structlog
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if cfg.system.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        logger = structlog.get_logger(__name__)
        logger.info(f"Logging to file: {log_file}")


def load_agent_config(cfg: Config = config) -> AgentConfig:
    """Load the agent persona, falling back to built-in instructions.

    Returns:
        AgentConfig from AGENT_PROMPT_FILE, or defaults when unset

    Raises:
        FileNotFoundError: If the configured file doesn't exist
        ValueError: If the configured file is invalid
    """
    logger = structlog.get_logger(__name__)

    if not cfg.ai.agent_prompt_file:
        return AgentConfig()

    # Resolve file path relative to project root if not absolute
    yaml_path = Path(cfg.ai.agent_prompt_file)
    if not yaml_path.is_absolute():
        project_root = Path(__file__).parent.parent
        yaml_path = project_root / yaml_path

    logger.info(
        "Loading agent prompts from YAML",
        file_path=cfg.ai.agent_prompt_file,
        resolved_path=str(yaml_path),
        exists=yaml_path.exists()
    )

    return AgentConfig.from_yaml(yaml_path)


def create_upstream_client(cfg: Config = config) -> RealtimeClient:
    """Create one realtime client for a call.

    Returns:
        Mock client in test mode, OpenAI Realtime client otherwise

    Raises:
        ValueError: If the OpenAI API key is not configured
    """
    if cfg.ai.test_mode:
        return MockRealtimeClient(
            response_after_frames=cfg.ai.mock_response_frames,
            frame_ms=cfg.audio.frame_ms
        )

    if not cfg.ai.openai_api_key:
        raise ValueError("OpenAI API key not configured")

    return OpenAIRealtimeClient(
        api_key=cfg.ai.openai_api_key,
        model=cfg.ai.openai_model,
        url=cfg.ai.openai_url,
        connect_timeout=cfg.ai.connect_timeout
    )


def create_application(cfg: Config = config) -> FastAPI:
    """Build the ASGI application from configuration."""
    agent = load_agent_config(cfg)

    logger = structlog.get_logger(__name__)
    logger.info(
        "Agent configuration",
        test_mode=cfg.ai.test_mode,
        model=cfg.ai.openai_model,
        **agent.to_dict()
    )

    return create_app(
        cfg,
        upstream_factory=lambda: create_upstream_client(cfg),
        agent=agent
    )


def cli() -> None:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Realtime Voice Bridge: phone and browser audio to a realtime AI endpoint"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0"
    )
    parser.add_argument("--host", default=config.server.host, help="Bind address")
    parser.add_argument("--port", type=int, default=config.server.port, help="Bind port")
    parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Use the mock AI endpoint instead of OpenAI"
    )

    args = parser.parse_args()

    if args.test_mode:
        config.ai.test_mode = True

    # Setup logging BEFORE anything else
    setup_logging()

    logger = structlog.get_logger(__name__)
    logger.info(
        "Realtime Voice Bridge starting",
        version="0.1.0",
        host=args.host,
        port=args.port,
        test_mode=config.ai.test_mode
    )

    try:
        app = create_application()
        uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    except KeyboardInterrupt:
        logger.info("Shutdown complete")
        sys.exit(0)
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
