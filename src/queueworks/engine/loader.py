"""Resolves a ``module:attribute`` path to a frozen :class:`Definitions` bundle."""

from __future__ import annotations

import importlib

from queueworks.engine.definitions import Definitions
from queueworks.engine.errors import DefinitionError


def load_definitions(path: str | None) -> Definitions:
    """Import ``package.module:attribute``.

    The attribute is either a ``Definitions`` instance or a zero-argument callable
    returning one.
    """

    if not path:
        raise DefinitionError(
            "No definitions configured. Set QUEUEWORKS_DEFINITIONS or pass --definitions "
            "(format: package.module:attribute).",
        )
    module_path, sep, attribute = path.partition(":")
    if not sep or not module_path or not attribute:
        raise DefinitionError(
            f"Invalid definitions path {path!r}. Expected format 'package.module:attribute'.",
        )

    try:
        module = importlib.import_module(module_path)
    except ImportError as error:
        raise DefinitionError(
            f"Cannot import definitions module {module_path!r}: {error}",
        ) from error

    target: object = module
    for name in attribute.split("."):
        try:
            target = getattr(target, name)
        except AttributeError as error:
            raise DefinitionError(
                f"Module {module_path!r} has no attribute {attribute!r}",
            ) from error

    if callable(target) and not isinstance(target, Definitions):
        target = target()
    if not isinstance(target, Definitions):
        raise DefinitionError(
            f"{path!r} resolved to {type(target).__name__}, expected Definitions.",
        )
    return target
