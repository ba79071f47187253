"""Utility functions for the ElastiCache provisioner."""

import logging
import random
import string
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

# Characters allowed in ElastiCache identifiers (lowercase letters and digits)
_IDENTIFIER_ALPHABET = string.ascii_lowercase + string.digits


def generate_random_id(length: int) -> str:
    """Generate a short random token for resource naming.

    The token only disambiguates names; it is not meant to be secret.

    Args:
        length: Number of characters

    Returns:
        Random lowercase alphanumeric string
    """
    return "".join(random.choice(_IDENTIFIER_ALPHABET) for _ in range(length))


def join_by_hyphen(*parts: Optional[str]) -> str:
    """Join non-empty name parts with hyphens.

    Args:
        *parts: Name fragments (None or empty fragments are skipped)

    Returns:
        Hyphen-joined name
    """
    return "-".join(str(part) for part in parts if part)


def merge_tags(sources: Iterable[Optional[Mapping[str, str]]]) -> Dict[str, str]:
    """Merge tag mappings, later sources overriding earlier ones.

    Args:
        sources: Tag mappings in increasing precedence order

    Returns:
        Merged tag dictionary
    """
    merged: Dict[str, str] = {}
    for source in sources:
        if source:
            merged.update(source)
    return merged


def to_aws_tags(tags: Mapping[str, str]) -> List[Dict[str, str]]:
    """Convert a tag mapping to the AWS ``[{"Key": ..., "Value": ...}]`` shape."""
    return [{"Key": key, "Value": value} for key, value in tags.items()]


def apply_present_fields(
    target: Dict[str, Any],
    options: Any,
    field_map: Mapping[str, str]
) -> Dict[str, Any]:
    """Copy the present (non-None) option fields into a request payload.

    Args:
        target: Request payload to update in place
        options: Sparse options object (attribute access)
        field_map: Mapping of option attribute -> payload key

    Returns:
        The updated target payload
    """
    for attribute, key in field_map.items():
        value = getattr(options, attribute, None)
        if value is not None:
            target[key] = value
    return target


def ensure_parent_dir(path: str) -> str:
    """Ensure the parent directory of a file path exists.

    Args:
        path: File path

    Returns:
        Absolute file path
    """
    path_obj = Path(path)
    path_obj.parent.mkdir(parents=True, exist_ok=True)
    return str(path_obj.absolute())


def setup_logger(verbose: bool = False) -> logging.Logger:
    """Setup logger with appropriate level.

    Args:
        verbose: Enable DEBUG level logging

    Returns:
        Configured logger
    """
    logger = logging.getLogger("elasticache_provisioner")

    # Set level
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # Create console handler (stderr)
    handler = logging.StreamHandler()
    handler.setLevel(level)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger
