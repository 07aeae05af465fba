"""Utilities to parse packages versions."""

import logging

import numpy as np
import scipy

from geopcga.__about__ import __version__


def show_versions(logger: logging.Logger) -> None:
    """Show the versions of all packages used by geopcga."""

    logger.info(f"Current version = {__version__}\n")
    logger.info("Used packages version:\n")
    logger.info(f"numpy                       = {np.__version__}")
    logger.info(f"scipy                       = {scipy.__version__}")
