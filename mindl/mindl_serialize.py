from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

import yaml

from mindl.mindl_directives import DirectiveResult


# --------------------------
# Helpers
# --------------------------

def _norm_text(data: bytes | bytearray | str, *, encoding: Optional[str] = None) -> str:
    if isinstance(data, (bytes, bytearray)):
        return data.decode(encoding or 'utf-8', errors='replace')
    return data


def detect_format(data_hint: Optional[str] = None, filename: Optional[str] = None) -> str:
    """
    Returns 'json' or 'yaml'. A filename extension wins; otherwise JSON
    objects and arrays are sniffed by their first character. YAML is the
    fallback since it is a superset.
    """
    if filename:
        lowered = filename.lower()
        if lowered.endswith('.json'):
            return 'json'
        if lowered.endswith(('.yaml', '.yml')):
            return 'yaml'
    if data_hint is not None:
        s = data_hint.lstrip()
        if s.startswith('{') or s.startswith('['):
            return 'json'
    return 'yaml'


# --------------------------
# Public API
# --------------------------

def dump_records(results: Mapping[str, DirectiveResult], *, fmt: str = 'json', pretty: bool = True) -> str:
    """Serialize a `{directive key: DirectiveResult}` cache to text."""
    built = {key: result.to_record() for key, result in results.items()}
    f = (fmt or '').lower()
    if f == 'json':
        return json.dumps(built, ensure_ascii=False, indent=2 if pretty else None)
    if f == 'yaml':
        return yaml.safe_dump(built, sort_keys=False, allow_unicode=True)
    raise ValueError(f"Unsupported serialization format: {fmt!r}")


def load_records(data: bytes | bytearray | str, *, fmt: Optional[str] = None) -> Dict[str, DirectiveResult]:
    """Inverse of `dump_records`. Raises ValueError when the text is not a record mapping."""
    text = _norm_text(data)
    f = fmt or detect_format(text)
    if f == 'json':
        loaded: Any = json.loads(text)
    elif f == 'yaml':
        loaded = yaml.safe_load(text)
    else:
        raise ValueError(f"Unsupported serialization format: {fmt!r}")
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Expected a mapping of directive records, got {type(loaded).__name__}")
    return {str(key): DirectiveResult.from_record(record) for key, record in loaded.items()}


__all__ = [
    "dump_records",
    "load_records",
    "detect_format",
]
