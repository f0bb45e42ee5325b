import argparse
import logging
import os
from dataclasses import replace
from typing import List, Optional

import uvicorn

from mongo_automation import __version__
from mongo_automation.config import PRODUCTION_LOG_FILE, Settings
from mongo_automation.connectivity import failed_nodes
from mongo_automation.context import AutomationContext, build_context
from mongo_automation.errors import AutomationError
from mongo_automation.hardening import apply_production_hardening
from mongo_automation.logs import setup_logging
from mongo_automation.report import print_summary, validate_installation
from mongo_automation.web import create_app

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="hrmlabs-mongo",
        description="HRM Labs MongoDB replication automation and dashboard",
    )
    p.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("-w", "--web-only", action="store_true", help="Start the web dashboard only")
    mode.add_argument("-c", "--cli-only", action="store_true", help="Run the installation without the dashboard")
    p.add_argument("-p", "--production", action="store_true", help="Production mode with host hardening")
    p.add_argument("-t", "--test", action="store_true", help="Small test dataset and short timeouts")
    p.add_argument("--port", type=int, help="Dashboard port (default: PORT or 3000)")
    p.add_argument("--skip-deps", action="store_true", help="Skip local dependency installation")
    p.add_argument("--skip-connectivity", action="store_true", help="Skip SSH connectivity checks")
    p.add_argument("--accounts", help="Path to accounts.json")
    p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level")
    return p.parse_args(argv)


def settings_from_args(args: argparse.Namespace, base: Optional[Settings] = None) -> Settings:
    settings = base or Settings.from_env()
    overrides = {}
    if args.port:
        overrides["port"] = args.port
    if args.accounts:
        overrides["accounts_path"] = args.accounts
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.production:
        overrides["app_env"] = "production"
        # fail2ban watches this file for rejected requests
        if not settings.log_file:
            overrides["log_file"] = PRODUCTION_LOG_FILE
    settings = replace(settings, **overrides)
    if args.test:
        settings = settings.for_test_mode()
    return settings


def is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def run_cli(ctx: AutomationContext) -> int:
    logger.info("Running CLI installation...")
    try:
        ctx.sequencer.run()
    except AutomationError as e:
        logger.error("Installation failed: %s", e)
        return 1
    except Exception:
        # already recorded on the run, report it with the traceback
        logger.exception("Installation failed")
        return 1

    problems = validate_installation(ctx)
    print_summary(ctx)
    return 1 if problems else 0


def prepare_host(ctx: AutomationContext, args: argparse.Namespace) -> int:
    if not args.skip_deps:
        logger.info("Installing local dependencies...")
        try:
            for result in ctx.installer.install_local_dependencies():
                logger.info("%s: %s", "present" if result.skipped else "installed", result.command)
        except AutomationError as e:
            logger.warning("Local dependency installation failed: %s", e)

    if not args.skip_connectivity:
        logger.info("Checking SSH connectivity...")
        failed = failed_nodes(ctx.check_connectivity())
        if failed:
            logger.warning("SSH connectivity check failed for %s; continuing anyway", ", ".join(sorted(failed)))

    if ctx.settings.is_production:
        logger.info("Applying production hardening...")
        try:
            apply_production_hardening(ctx.executor, ctx.settings)
        except AutomationError as e:
            logger.error("Production hardening failed: %s", e)
            return 1
    return 0


def watch_installations(ctx: AutomationContext, dashboard_url: str) -> None:
    """Validate the cluster and the running dashboard after every completed run."""
    start_monitoring = ctx.sequencer.on_completed

    def after_installation():
        if start_monitoring is not None:
            start_monitoring()
        validate_installation(ctx, dashboard_url)
        print_summary(ctx)

    ctx.sequencer.on_completed = after_installation


def serve(ctx: AutomationContext) -> None:
    logger.info("Starting web dashboard on port %s...", ctx.settings.port)
    watch_installations(ctx, f"http://127.0.0.1:{ctx.settings.port}")
    app = create_app(ctx)
    uvicorn.run(app, host="0.0.0.0", port=ctx.settings.port, log_config=None)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = settings_from_args(args)
    setup_logging(settings.log_level, settings.log_file)
    logger.info("HRM Labs MongoDB automation %s (%s)", __version__, settings.app_env)
    logger.debug("Settings: %s", settings.redacted())

    if (args.cli_only or args.production) and not is_root():
        logger.error("This mode must be run as root")
        return 1

    try:
        ctx = build_context(settings)
    except (OSError, ValueError) as e:
        logger.error("Cannot load %s: %s", settings.accounts_path, e)
        return 1
    ctx.sequencer.skip_deps = args.skip_deps
    ctx.sequencer.skip_connectivity = args.skip_connectivity

    if args.cli_only:
        try:
            return run_cli(ctx)
        finally:
            ctx.close()

    if not args.web_only:
        code = prepare_host(ctx, args)
        if code:
            ctx.close()
            return code

    serve(ctx)
    return 0
