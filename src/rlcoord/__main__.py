"""CLI entrypoint for the rlcoord coordinator.

Provides subcommands:
    python -m rlcoord run     - Run the coordinator with the synthetic trainer
    python -m rlcoord config  - Print the resolved configuration

Entry point after pip install:
    rlcoord - Same as 'python -m rlcoord'
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from .errors import CoordinatorError, ValidationError


def load_seed_file(coordinator, path: str | Path) -> tuple[int, int]:
    """Register the agents and submit the tasks listed in a JSON file.

    The file holds ``{"agents": [{...}], "tasks": [{...}]}`` where every
    object carries the AgentDefinition / TaskSubmission fields.

    Returns:
        (agents registered, tasks submitted)

    Raises:
        ValidationError: If the file or any entry is malformed.
    """
    from .models import AgentDefinition, TaskSubmission

    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"{path} is not valid JSON: {e}") from e

    agents = data.get("agents", [])
    tasks = data.get("tasks", [])
    try:
        definitions = [AgentDefinition(**a) for a in agents]
        submissions = [TaskSubmission(**t) for t in tasks]
    except TypeError as e:
        raise ValidationError(f"malformed entry in {path}: {e}") from e

    for definition in definitions:
        coordinator.register_agent(definition)
    for submission in submissions:
        coordinator.submit_task(submission)
    return len(definitions), len(submissions)


def cmd_run(args: argparse.Namespace) -> int:
    """Run the coordinator for --ticks ticks, or on the timer until a signal arrives."""
    import numpy as np
    import torch

    from .central_config import get_config
    from .config import EngineConfig, RLConfig
    from .coordinator import Coordinator
    from .metrics import start_metrics_server
    from .trainer import SyntheticTrainer

    logger = logging.getLogger(__name__)

    try:
        config = get_config()
        rl = RLConfig.from_args(args, base=config.rl)
        engine = EngineConfig.from_args(args, base=config.engine)
        if args.seed is not None:
            engine.seed = args.seed
            engine.validate()
    except CoordinatorError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    port = args.metrics_port if args.metrics_port is not None else config.metrics.port
    if port:
        start_metrics_server(port)

    if engine.seed is not None:
        torch.manual_seed(engine.seed)
    trainer_rng = np.random.default_rng(
        None if engine.seed is None else [engine.seed, 1]
    )

    try:
        coordinator = Coordinator(rl, engine, trainer=SyntheticTrainer(trainer_rng))
        if args.state and Path(args.state).exists():
            coordinator.restore_state(args.state)
        if args.seed_file:
            n_agents, n_tasks = load_seed_file(coordinator, args.seed_file)
            logger.info(f"Seeded {n_agents} agents and {n_tasks} tasks")
    except (CoordinatorError, OSError) as e:
        logger.error(f"Startup failed: {e}")
        return 2

    with coordinator:
        if args.ticks > 0:
            logger.info(f"Running {args.ticks} ticks")
            try:
                for _ in range(args.ticks):
                    coordinator.tick()
            except KeyboardInterrupt:
                logger.info("Interrupted by user")
        else:
            stop = threading.Event()

            def _handle_signal(signum, frame):
                logger.info(f"Received signal {signum}, pausing coordinator")
                stop.set()

            signal.signal(signal.SIGINT, _handle_signal)
            signal.signal(signal.SIGTERM, _handle_signal)
            coordinator.start()
            while not stop.wait(0.5):
                pass
            coordinator.pause()

        if args.state:
            coordinator.save_state(args.state)

        summary = {
            "metrics": coordinator.metrics_snapshot().to_dict(),
            "replay": coordinator.replay_stats().to_dict(),
            "agents": [a.to_dict() for a in coordinator.agents()],
            "pending_tasks": [t.id for t in coordinator.pending_tasks()],
            "network_pairs": [p.to_dict() for p in coordinator.network_pairs()],
        }
        if not args.include_history:
            summary["metrics"].pop("history")
    print(json.dumps(summary, indent=2))
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Print the resolved configuration as JSON."""
    from .central_config import get_config

    try:
        config = get_config()
    except CoordinatorError as e:
        logging.getLogger(__name__).error(f"Invalid configuration: {e}")
        return 2
    print(json.dumps(config.to_dict(), indent=2))
    return 0


def setup_run_parser(subparsers: argparse._SubParsersAction) -> None:
    """Set up the run subcommand parser."""
    from .central_config import get_config
    from .config import EngineConfig, RLConfig

    parser = subparsers.add_parser(
        "run",
        help="Run the coordinator with the synthetic trainer",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    RLConfig.configure_parser(parser)
    EngineConfig.configure_parser(parser)
    try:
        config = get_config()
        RLConfig.set_parser_defaults(parser, config.rl)
        EngineConfig.set_parser_defaults(parser, config.engine)
    except CoordinatorError:
        # Reported by cmd_run once logging is configured
        pass
    parser.add_argument(
        "--ticks", type=int, default=0,
        help="Number of ticks to run (0 = run on the timer until SIGINT/SIGTERM)",
    )
    parser.add_argument(
        "--seed-file", type=str, default=None,
        help="JSON file with agents and tasks to load at startup",
    )
    parser.add_argument(
        "--seed", type=int, default=None,
        help="Seed for every random generator",
    )
    parser.add_argument(
        "--state", type=str, default=None,
        help="State file restored at startup (if present) and saved on exit",
    )
    parser.add_argument(
        "--metrics-port", type=int, default=None,
        help="Port for the Prometheus exporter (default: [metrics] port, 0 = off)",
    )
    parser.add_argument(
        "--include-history", action="store_true",
        help="Include the per-episode history in the printed summary",
    )
    parser.set_defaults(func=cmd_run)


def setup_config_parser(subparsers: argparse._SubParsersAction) -> None:
    """Set up the config subcommand parser."""
    parser = subparsers.add_parser(
        "config",
        help="Print the resolved configuration",
    )
    parser.set_defaults(func=cmd_config)


def main(argv: list[str] | None = None) -> int:
    """Main entry point with subcommand support."""
    parser = argparse.ArgumentParser(
        description="Reinforcement-learning training coordinator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--log-level", type=str, default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: [logging] level)",
    )
    subparsers = parser.add_subparsers(
        title="commands",
        description="Available commands",
        dest="command",
    )
    setup_run_parser(subparsers)
    setup_config_parser(subparsers)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    from .structured_logging import setup_logging

    level = args.log_level
    if level is None:
        try:
            from .central_config import get_config

            level = get_config().logging.level
        except CoordinatorError:
            level = "INFO"
    setup_logging(level=level, component="coordinator")

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
