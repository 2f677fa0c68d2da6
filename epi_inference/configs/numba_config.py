"""
JIT settings for the compiled kernels
=====================================

Only the ``'numba'`` simulator backend and ``mh_accept`` are decorated with
``numba_switchable``; the default ``'numpy'`` backend never compiles anything.

``JIT_OVERRIDES`` maps dotted names to on/off. A name can be a module
(``'epi_inference.utils.simulation_kernels'``) or a single function
(``'epi_inference.samplers.pmcmc.mh_accept'``); the longest matching name
wins and ``JIT_DEFAULT`` applies when nothing matches. Switching a kernel off
runs the same Python code, which is what the tests use to check the
compiled and interpreted paths against each other.
"""

from pathlib import Path

# ============================================================================
# Compilation switch
# ============================================================================
JIT_DEFAULT: bool = True

JIT_OVERRIDES: dict[str, bool] = {
    # 'epi_inference.utils.simulation_kernels': False,
    # 'epi_inference.samplers.pmcmc.mh_accept': False,
}

# ============================================================================
# On-disk cache
# ============================================================================
# None keeps numba's default (__pycache__ next to each module). Worker
# processes of a search share whatever directory is set here.
CACHE_DIR: Path | str | None = None
