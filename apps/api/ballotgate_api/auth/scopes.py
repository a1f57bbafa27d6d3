"""API key scope validation utilities."""

import json
import logging
from typing import List

logger = logging.getLogger(__name__)

TOKENS_ISSUE = "tokens:issue"
ADMIN = "admin"

VALID_SCOPES = {TOKENS_ISSUE, ADMIN}


def validate_scopes(scopes) -> List[str]:
    """
    Validate and parse scopes from a JSON string or list.

    Raises:
        ValueError: If scopes are malformed or unknown
    """
    if not scopes:
        return []

    try:
        scope_list = json.loads(scopes) if isinstance(scopes, str) else scopes
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in scopes: {e}") from e
    if not isinstance(scope_list, list):
        raise ValueError("Scopes must be a JSON array")

    for scope in scope_list:
        if not isinstance(scope, str):
            raise ValueError(f"Scope must be a string: {scope}")
        if scope not in VALID_SCOPES:
            raise ValueError(f"Unknown scope: {scope}")
    return list(scope_list)


def parse_scopes(stored: str) -> List[str]:
    """Scopes of a stored client; malformed values grant nothing."""
    try:
        return validate_scopes(stored)
    except ValueError as e:
        logger.warning(f"Ignoring malformed stored scopes: {e}")
        return []


def format_scopes(scopes: List[str]) -> str:
    """Format scope list as JSON string for storage."""
    if not scopes:
        return "[]"
    return json.dumps(sorted(set(scopes)))
