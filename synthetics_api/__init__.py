"""RHOBS Synthetics API - management API for synthetic monitoring probes."""

import argparse
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _create_probe_store(storage):
    """Build the probe store for the configured database engine.

    Args:
        storage: StorageConfig selecting the engine and its settings.

    Raises:
        ProbeStoreError: If the local store cannot be opened.
        KubeClientError: If no Kubernetes configuration can be loaded.
        ValueError: If the engine is not supported.
    """
    from .config import ENGINE_ETCD, ENGINE_LOCAL

    if storage.engine == ENGINE_ETCD:
        from .kube_store import KubernetesProbeStore
        from .kubeclient import create_clients

        clients = create_clients(storage.kubeconfig)
        logger.info(
            "Using Kubernetes probe store in namespace %s (in-cluster: %s)",
            storage.namespace,
            clients.in_cluster,
        )
        return KubernetesProbeStore(clients.core_api, storage.namespace, clients.version_api)

    if storage.engine == ENGINE_LOCAL:
        from .local_store import LocalProbeStore

        logger.info("Using local probe store in %s", storage.data_dir)
        return LocalProbeStore(storage.data_dir)

    raise ValueError(f"unsupported database engine: {storage.engine}")


def _cmd_start(args: argparse.Namespace) -> None:
    """Execute the start command - run the API server."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("RHOBS Synthetics API %s starting...", __version__)

    # Import here to allow logging setup first
    from .api import ApiError, ApiServer
    from .config import ConfigError, apply_cli_overrides, load_config
    from .kubeclient import KubeClientError
    from .metrics import Metrics
    from .monitor import ProbeMonitor
    from .probe_service import ProbeService
    from .store import ProbeStoreError

    # 1. Load configuration
    try:
        config = load_config(args.config)
        config = apply_cli_overrides(
            config,
            host=args.host,
            port=args.port,
            database_engine=args.database_engine,
            data_dir=args.data_dir,
            namespace=args.namespace,
            kubeconfig=args.kubeconfig,
            log_level=args.log_level,
        )
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    if not args.verbose:
        logging.getLogger().setLevel(config.logging.level.upper())
    if args.config:
        logger.info("Configuration loaded from %s", args.config)

    # 2. Initialize probe store
    try:
        store = _create_probe_store(config.storage)
    except (ProbeStoreError, KubeClientError, ValueError) as e:
        logger.error("Failed to create probe store: %s", e)
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start components
    metrics = Metrics()
    service = ProbeService(store, metrics)
    monitor: Optional[ProbeMonitor] = None
    if config.monitor.enabled:
        monitor = ProbeMonitor(store, metrics, config.monitor.interval)

    api_server = ApiServer(config.server, service, metrics, store)

    try:
        try:
            api_server.start()
        except ApiError as e:
            logger.error("Failed to start API server: %s", e)
            sys.exit(1)

        if monitor is not None:
            monitor.start()

        logger.info("All components started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup - stop all components
        logger.info("Shutting down components...")

        api_server.stop()

        if monitor is not None:
            monitor.stop()

        logger.info("Shutdown complete")


def _add_start_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to an optional YAML configuration file",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Address to bind the API server to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port for the API server (default: 8080)",
    )
    parser.add_argument(
        "--database-engine",
        choices=["etcd", "local"],
        default=None,
        help="Probe storage engine (default: etcd)",
    )
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory for probe files when using the local engine (default: data)",
    )
    parser.add_argument(
        "--namespace",
        default=None,
        help="Kubernetes namespace for probe ConfigMaps (default: default)",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to a kubeconfig file (default: in-cluster, then ~/.kube/config)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Log level (default: info)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point for the synthetics_api package."""
    parser = argparse.ArgumentParser(
        prog="rhobs-synthetics-api",
        description="RHOBS Synthetics API - manage synthetic monitoring probes",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"rhobs-synthetics-api {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Start subcommand (default behavior)
    start_parser = subparsers.add_parser(
        "start",
        help="Start the API server (default)",
    )
    _add_start_arguments(start_parser)
    start_parser.set_defaults(func=_cmd_start)

    args = parser.parse_args(argv)

    # Default to 'start' with default options if no command specified
    if args.command is None:
        args = start_parser.parse_args([])
        args.func = _cmd_start

    args.func(args)
