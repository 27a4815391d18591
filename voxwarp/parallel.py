"""
Fan-out of independent per-slice work over a thread pool.
"""

from __future__ import annotations

import concurrent.futures
import logging

import voxwarp as vw


logger = logging.getLogger(__name__)


def for_each_slice(
    num_slices: int,
    process_slice: callable,
    config: vw.config.ResamplingConfig | None = None) -> list:
    """
    Run `process_slice(z)` for every slice index and wait for all of them.

    Slices must not share mutable state. The first exception raised by a
    slice propagates to the caller once the pool has shut down.

    Args:
        num_slices (int): Number of slices.
        process_slice (callable): Function of the slice index.
        config (ResamplingConfig, optional): Parallelism settings.

    Returns:
        list: Results ordered by slice index.
    """
    if config is None:
        config = vw.config.defaults.resampling

    results = [None] * num_slices
    if not config.parallel or config.max_workers == 1 or num_slices <= 1:
        for z in range(num_slices):
            results[z] = process_slice(z)
        return results

    with concurrent.futures.ThreadPoolExecutor(max_workers=config.max_workers) as executor:
        future_to_slice = {executor.submit(process_slice, z): z for z in range(num_slices)}
        for future in concurrent.futures.as_completed(future_to_slice):
            results[future_to_slice[future]] = future.result()

    logger.debug(f'processed {num_slices} slices in parallel')
    return results
