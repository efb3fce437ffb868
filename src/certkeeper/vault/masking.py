"""Secret fields inside deployment action configs.

On disk a secret value is replaced by a wrapped handle::

    {"password": {"$secret": {"ciphertext": "...", "nonce": "...",
                              "kdfSalt": "...", "keyVersion": "1"}}}

Reads show :data:`MASK` instead.  Writes interpret values as follows:

- :data:`MASK` or an absent key: keep the stored secret unchanged;
- empty string or ``None``: clear the secret;
- any other string: wrap it as the new secret.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any

from certkeeper.logging.sanitize import is_secret_key
from certkeeper.models.certificate import PassphraseHandle

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

MASK = "••••••••"
HANDLE_KEY = "$secret"


def is_handle(value: Any) -> bool:  # noqa: ANN401
    return isinstance(value, dict) and HANDLE_KEY in value


def handle_of(value: dict) -> PassphraseHandle:
    return PassphraseHandle.from_record(value[HANDLE_KEY])


def _is_secret(key: str, path: str, declared: frozenset[str]) -> bool:
    return path in declared or is_secret_key(key)


def iter_handles(config: Any, path: str = "") -> Iterator[tuple[str, PassphraseHandle]]:  # noqa: ANN401
    """Yield ``(dotted_path, handle)`` for every wrapped secret in *config*."""
    if isinstance(config, dict):
        if is_handle(config):
            yield path, handle_of(config)
            return
        for key, value in config.items():
            yield from iter_handles(value, f"{path}.{key}" if path else key)
    elif isinstance(config, list):
        for idx, item in enumerate(config):
            yield from iter_handles(item, f"{path}[{idx}]")


def mask_secrets(config: Any) -> Any:  # noqa: ANN401
    """Return a copy of *config* with every handle replaced by :data:`MASK`."""
    if isinstance(config, dict):
        if is_handle(config):
            return MASK
        return {k: mask_secrets(v) for k, v in config.items()}
    if isinstance(config, list):
        return [mask_secrets(v) for v in config]
    return copy.deepcopy(config)


def merge_secrets(
    new: dict,
    old: dict | None,
    wrap: Callable[[str], PassphraseHandle],
    *,
    declared: frozenset[str] = frozenset(),
    _path: str = "",
) -> dict:
    """Combine an incoming config with the stored one.

    Parameters
    ----------
    new:
        Config as supplied by the caller (may contain plaintext or MASK).
    old:
        Config currently stored (may contain handles).
    wrap:
        Function sealing a plaintext secret.
    declared:
        Dotted paths that are secrets even if their key name does not
        look like one.

    """
    old = old or {}
    result: dict = {}

    for key, value in new.items():
        path = f"{_path}.{key}" if _path else key
        previous = old.get(key)
        if isinstance(value, dict) and not is_handle(value):
            result[key] = merge_secrets(
                value,
                previous if isinstance(previous, dict) else None,
                wrap,
                declared=declared,
                _path=path,
            )
        elif _is_secret(key, path, declared) and not is_handle(value):
            if value == MASK:
                if is_handle(previous):
                    result[key] = copy.deepcopy(previous)
            elif value in ("", None):
                continue
            else:
                result[key] = {HANDLE_KEY: wrap(str(value)).to_record()}
        else:
            result[key] = copy.deepcopy(value)

    # Absent secrets are kept unchanged
    for key, previous in old.items():
        if key not in new and is_handle(previous):
            result[key] = copy.deepcopy(previous)
    return result


def reveal_secrets(config: Any, unwrap: Callable[[PassphraseHandle], str]) -> Any:  # noqa: ANN401
    """Return a copy of *config* with every handle replaced by its plaintext."""
    if isinstance(config, dict):
        if is_handle(config):
            return unwrap(handle_of(config))
        return {k: reveal_secrets(v, unwrap) for k, v in config.items()}
    if isinstance(config, list):
        return [reveal_secrets(v, unwrap) for v in config]
    return copy.deepcopy(config)


def replace_handles(config: Any, rewrap: Callable[[PassphraseHandle], PassphraseHandle]) -> Any:  # noqa: ANN401
    """Return a copy of *config* with every handle re-wrapped."""
    if isinstance(config, dict):
        if is_handle(config):
            return {HANDLE_KEY: rewrap(handle_of(config)).to_record()}
        return {k: replace_handles(v, rewrap) for k, v in config.items()}
    if isinstance(config, list):
        return [replace_handles(v, rewrap) for v in config]
    return copy.deepcopy(config)


def find_plaintext_secrets(config: Any, path: str = "") -> list[str]:  # noqa: ANN401
    """Dotted paths of secret-named keys holding unwrapped strings."""
    found: list[str] = []
    if isinstance(config, dict) and not is_handle(config):
        for key, value in config.items():
            child = f"{path}.{key}" if path else key
            if isinstance(value, str) and value and is_secret_key(key):
                found.append(child)
            else:
                found.extend(find_plaintext_secrets(value, child))
    elif isinstance(config, list):
        for idx, item in enumerate(config):
            found.extend(find_plaintext_secrets(item, f"{path}[{idx}]"))
    return found
