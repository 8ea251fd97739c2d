"""Entry point of the session dashboard.

Usage: ntm-dashboard [--project DIR] [--config PATH] [--coordinate] <session>
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Callable, Coroutine, Optional

from instrukt_ai_logging import get_logger

from ntm.agentmail import AgentMailClient
from ntm.agentmail.session import load_session_agent, resolve_session_agent
from ntm.cli.tui.app import DashboardApp
from ntm.config import NtmConfig, coordinator_settings_from_env, get_config, refresh_intervals_from_env
from ntm.constants import DEFAULT_SESSION_AGENT_NAME
from ntm.coordinator import CoordinatorConfig, SessionCoordinator
from ntm.coordinator.monitor import AgentMonitor
from ntm.core.context_usage import ContextEstimator
from ntm.core.errors import NtmError
from ntm.core.sources import DashboardContext, build_source_specs
from ntm.core.status_detector import StatusDetector
from ntm.core.task_registry import TaskRegistry
from ntm.core.view_store import ViewStore
from ntm.logging_config import setup_logging

logger = get_logger(__name__)


def _mail_client(cfg: NtmConfig, project_dir: str) -> Optional[AgentMailClient]:
    if not cfg.agent_mail.enabled:
        return None
    return AgentMailClient(
        base_url=cfg.agent_mail.url,
        token=cfg.agent_mail.token or "",
        timeout=cfg.agent_mail.timeout_s,
        project_key=project_dir,
    )


def _session_agent_name(session: str, project_dir: str, cfg: NtmConfig) -> str:
    """Stored identity of the session, else the fixed coordinator name."""
    try:
        info = load_session_agent(session, project_dir, cfg.session_registry.fallback_mode)
    except NtmError as e:
        logger.warning("Ignoring unreadable session agent file: %s", e)
        info = None
    return info.agent_name if info else DEFAULT_SESSION_AGENT_NAME


def _identity_task(
    mail: AgentMailClient,
    ctx: DashboardContext,
    coordinator: Optional[SessionCoordinator],
) -> Callable[[], Coroutine[object, object, None]]:
    """Registers the session with Agent Mail and adopts the resulting sender name."""

    async def register() -> None:
        name = await resolve_session_agent(
            mail, ctx.session, ctx.project_dir, ctx.fallback_mode, current=ctx.session_agent
        )
        ctx.session_agent = name
        if coordinator is not None:
            coordinator.agent_name = name

    return register


def build_app(session: str, project_dir: str, cfg: NtmConfig, coordinate: bool = False) -> DashboardApp:
    """Wire store, sources, orchestrator and (optionally) the coordinator into the app."""
    intervals = refresh_intervals_from_env(cfg.dashboard)
    registry = TaskRegistry()
    estimator = ContextEstimator(cfg.context)
    detector = StatusDetector(estimator)
    store = ViewStore(session)
    mail = _mail_client(cfg, project_dir)
    agent_name = _session_agent_name(session, project_dir, cfg) if mail is not None else ""

    ctx = DashboardContext(
        session=session,
        project_dir=project_dir,
        config=cfg,
        intervals=intervals,
        tasks=registry,
        estimator=estimator,
        detector=detector,
        mail=mail,
        session_agent=agent_name,
        fallback_mode=cfg.session_registry.fallback_mode,
    )
    specs = build_source_specs(ctx, store)

    coordinator = None
    if coordinate:
        settings = coordinator_settings_from_env(cfg.coordinator)
        monitor = AgentMonitor(
            session,
            project_dir,
            estimator=estimator,
            models=cfg.models,
            lines=intervals.output_lines,
            fallback_mode=cfg.session_registry.fallback_mode,
        )
        coordinator = SessionCoordinator(
            session,
            project_dir,
            mail,
            agent_name=agent_name,
            config=CoordinatorConfig.from_settings(settings),
            monitor=monitor,
            registry=registry,
        )

    startup = [_identity_task(mail, ctx, coordinator)] if mail is not None else []
    return DashboardApp(store, specs, intervals.tick, registry=registry, coordinator=coordinator, startup=startup)


def main() -> None:
    parser = argparse.ArgumentParser(description="Live dashboard of an NTM tmux session.")
    parser.add_argument("session", help="tmux session name")
    parser.add_argument("--project", help="Project directory (default: config project_dir, else cwd)")
    parser.add_argument("--config", type=Path, help="Path to ntm.yml")
    parser.add_argument("--coordinate", action="store_true", help="Run the session coordinator alongside")
    parser.add_argument("--log-level", help="Override NTM_LOG_LEVEL")
    args = parser.parse_args()

    setup_logging(args.log_level)
    cfg = get_config(args.config)
    project_dir = os.path.abspath(args.project or cfg.project_dir or os.getcwd())
    logger.info("Starting dashboard for %s (project %s)", args.session, project_dir)

    app = build_app(args.session, project_dir, cfg, coordinate=args.coordinate)
    app.run()


if __name__ == "__main__":
    main()
