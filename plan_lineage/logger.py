import logging
import sys
from typing import Union


ROOT_LOGGER = "plan_lineage"

_DEF_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def get_logger(
    name: str = ROOT_LOGGER,
    level: Union[int, str] = logging.INFO,
    propagate: bool = False,
) -> logging.Logger:
    """Logger under the ``plan_lineage`` namespace.

    Bare names are nested under the namespace (``"cli"`` -> ``plan_lineage.cli``).
    The stdout handler lives on the namespace root only, so module loggers such
    as ``plan_lineage.propagator`` reach it through propagation. ``propagate``
    decides whether the namespace root also hands records to the host's root logger.
    """
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_DEF_FORMAT))
        root.addHandler(handler)
    root.propagate = propagate
    if isinstance(level, str):
        level = level.upper()
    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
