"""
Switchable JIT compilation
==========================

``numba_switchable`` wraps a numba-compatible function so that, per call, it
runs either the ``njit`` dispatcher or the plain Python body, as decided by
``epi_inference.configs.numba_config``. The decision is looked up at call
time, so switching JIT off after import (tests, debugging) takes effect
immediately. Compilation itself happens once, on the first compiled call.
"""

import logging
import os
import warnings
from functools import wraps
from pathlib import Path
from typing import Callable, Dict, Optional

from numba import njit
from numba.core.errors import NumbaError

from epi_inference.configs import numba_config as config

logger = logging.getLogger(__name__)


if config.CACHE_DIR is not None:
    _cache = Path(config.CACHE_DIR)
    _cache.mkdir(parents=True, exist_ok=True)
    os.environ.setdefault('NUMBA_CACHE_DIR', str(_cache.resolve()))


def jit_enabled(name: str) -> bool:
    """Whether the dotted ``name`` should run compiled.

    The longest prefix of ``name`` (split on dots) found in ``JIT_OVERRIDES``
    decides; otherwise ``JIT_DEFAULT``.
    """
    parts = name.split('.')
    for k in range(len(parts), 0, -1):
        key = '.'.join(parts[:k])
        if key in config.JIT_OVERRIDES:
            return config.JIT_OVERRIDES[key]
    return config.JIT_DEFAULT


def numba_switchable(func: Optional[Callable] = None, *, cache: bool = True,
                     fastmath: bool = False, **njit_kwargs) -> Callable:
    """Decorate a kernel so JIT compilation can be switched off by name.

    Usable bare (``@numba_switchable``) or with ``njit`` options
    (``@numba_switchable(cache=False)``). The wrapper exposes the undecorated
    function as ``.python`` and its dotted name as ``.full_name``. ``njit``
    compiles on the first call for each argument signature; if numba cannot
    type or lower the function then, a ``RuntimeWarning`` is issued once, the
    call is answered by the Python body and the function stays uncompiled.
    """

    def decorator(fn: Callable) -> Callable:
        full_name = f"{fn.__module__}.{fn.__qualname__}"
        dispatcher: Dict[str, Optional[Callable]] = {}

        def compiled() -> Optional[Callable]:
            if 'jit' not in dispatcher:
                dispatcher['jit'] = njit(fn, cache=cache, fastmath=fastmath, **njit_kwargs)
            return dispatcher['jit']

        @wraps(fn)
        def wrapper(*args, **kwargs):
            target = compiled() if jit_enabled(full_name) else None
            if target is None:
                return fn(*args, **kwargs)
            try:
                return target(*args, **kwargs)
            except NumbaError as e:
                # typing and lowering errors only; nopython runtime errors are plain Python ones
                warnings.warn(f"could not compile {full_name}, using Python: {e}", RuntimeWarning)
                dispatcher['jit'] = None
                return fn(*args, **kwargs)

        wrapper.python = fn
        wrapper.full_name = full_name
        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


# ============================================================================
# Runtime switches
# ============================================================================

def set_jit(name: str, enabled: bool) -> None:
    """Override compilation for a module or function by dotted name."""
    config.JIT_OVERRIDES[name] = bool(enabled)


def disable_globally():
    config.JIT_DEFAULT = False


def reset_config():
    """Back to compiled everywhere with no overrides."""
    config.JIT_DEFAULT = True
    config.JIT_OVERRIDES.clear()


def status() -> dict:
    return {
        'jit_default': config.JIT_DEFAULT,
        'overrides': dict(config.JIT_OVERRIDES),
        'cache_dir': os.environ.get('NUMBA_CACHE_DIR'),
    }
