#!/usr/bin/env python3
"""PeerGuard - headless entry point.

Runs a libtorrent session with the peer filters attached and logs every
dropped peer. Usage:

    python -m peerguard [file.torrent | magnet:?...] ...
"""

import os
import sys
import signal
import logging
from pathlib import Path

_CONFIG_DIR = Path.home() / ".peerguard"


def _crash_report(title: str, message: str):
    """Write a crash log and echo it to stderr."""
    try:
        crash_dir = _CONFIG_DIR / "logs"
        crash_dir.mkdir(parents=True, exist_ok=True)
        (crash_dir / "crash.log").write_text(f"{title}\n\n{message}", encoding="utf-8")
    except OSError:
        pass
    print(f"FATAL: {title}\n{message}", file=sys.stderr)


def setup_logging(level: int = logging.INFO):
    log_dir = _CONFIG_DIR / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_dir / "peerguard.log", encoding="utf-8"),
            logging.StreamHandler(sys.stdout),
        ],
    )


def main():
    setup_logging()
    logger = logging.getLogger("peerguard")
    logger.info("Starting PeerGuard...")

    try:
        import libtorrent as lt
        logger.info(f"libtorrent version: {lt.__version__}")
    except ImportError as e:
        logger.error(f"libtorrent import failed: {e}")
        _crash_report("PeerGuard - Missing Dependency", f"Failed to load libtorrent:\n{e}")
        sys.exit(1)

    from PyQt6.QtCore import QCoreApplication, QTimer, QMetaObject, Qt, Q_ARG

    from peerguard.core.settings import Settings
    from peerguard.core.session_worker import ThreadedSession
    from peerguard.utils.formatters import format_drop

    app = QCoreApplication(sys.argv)
    app.setApplicationName("PeerGuard")
    app.setApplicationVersion("1.0.0")

    settings = Settings()
    threaded = ThreadedSession(settings)
    settings.close()

    threaded.worker.peer_dropped.connect(
        lambda info_hash, ip, reason: logger.info(f"[{info_hash[:8]}] dropped {ip}: {reason}"))
    threaded.worker.torrent_skipped.connect(
        lambda info_hash: logger.info(f"[{info_hash[:8]}] peer filters not attached"))

    def _add_sources():
        for arg in sys.argv[1:]:
            if arg.startswith("magnet:"):
                method, value = "add_magnet", arg
            elif arg.endswith(".torrent") and os.path.isfile(arg):
                method, value = "add_torrent_file", os.path.abspath(arg)
            else:
                logger.warning(f"Ignoring argument: {arg}")
                continue
            QMetaObject.invokeMethod(
                threaded.worker, method, Qt.ConnectionType.QueuedConnection,
                Q_ARG(str, value), Q_ARG(str, ""))

    threaded.worker.started.connect(_add_sources)
    app.aboutToQuit.connect(threaded.stop)

    signal.signal(signal.SIGINT, lambda *_: app.quit())
    # Let the interpreter run periodically so SIGINT is delivered
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(250)

    threaded.start()
    logger.info("PeerGuard is ready.")
    code = app.exec()

    plugins = threaded.worker.plugins
    if plugins is not None and plugins.drop_log:
        logger.info(f"Dropped {plugins.stats['total_drops']} peers this session:")
        for entry in plugins.drop_log:
            logger.info(format_drop(entry))
    sys.exit(code)


if __name__ == "__main__":
    try:
        main()
    except SystemExit:
        raise
    except Exception:
        import traceback
        _crash_report("PeerGuard - Fatal Error", traceback.format_exc())
        sys.exit(1)
