# -*- codeing = utf-8 -*-
# @Create: 2023-02-16 3:37 p.m.
# @Update: 2025-10-24 11:53 p.m.
"""Run the monitor with a system-tray event loop: ``python -m servmon``."""

import argparse
import logging
import signal
import sys

from PySide6 import QtCore, QtWidgets

import configuration

from .app import MonitorApp

LOGGER = logging.getLogger("servmon")


def _parse_args(argv):
    parser = argparse.ArgumentParser(prog="servmon")
    parser.add_argument(
        "--headless",
        action="store_true",
        help="run without a tray icon; alerts are written to the log",
    )
    parser.add_argument(
        "--console",
        action="store_true",
        help="also log to the console",
    )
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    configuration.configure_logging(install_console=args.console or None)

    if args.headless:
        app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    else:
        app = QtWidgets.QApplication.instance() or QtWidgets.QApplication([])
        app.setQuitOnLastWindowClosed(False)

    monitor = MonitorApp()
    app.aboutToQuit.connect(monitor.shutdown)
    signal.signal(signal.SIGINT, lambda *_: app.quit())
    # Wake the event loop so Python gets a chance to run signal handlers.
    heartbeat = QtCore.QTimer()
    heartbeat.start(500)
    heartbeat.timeout.connect(lambda: None)

    monitor.startup()
    LOGGER.info("servmon.running smtp_port=%s", monitor.get_smtp_port())
    return app.exec()


if __name__ == "__main__":
    sys.exit(main())
