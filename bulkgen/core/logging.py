# -*- coding: utf-8 -*-
import logging
import os
import sys


def setup_logging(debug: bool = False) -> None:
    """
    Configure stdout logging for the bulk runner.
    LOG_LEVEL selects the level; debug=True forces DEBUG.
    """
    fmt = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.DEBUG if debug else getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format=fmt,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # websocket-client is chatty at DEBUG, keep it quiet unless it fails
    logging.getLogger("websocket").setLevel(logging.WARNING)
