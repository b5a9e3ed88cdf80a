"""
Execution helpers for independent units of work (tiles, grid-search
combinations) built as ``dask.delayed`` tasks.
"""

import dask
from dask.callbacks import Callback
from tqdm import tqdm
from typing import Any, Callable, List, Sequence, Tuple


class TqdmCallback(Callback):
    """Drive a tqdm progress bar from dask's scheduler callbacks."""

    def __init__(self, desc: str = None):
        super().__init__()
        self.desc = desc
        self._bar = None

    def _start_state(self, dsk, state):
        total = sum(len(state[k]) for k in ('ready', 'waiting', 'running', 'finished'))
        self._bar = tqdm(total=total, desc=self.desc)

    def _posttask(self, key, result, dsk, state, worker_id):
        self._bar.update(1)

    def _finish(self, dsk, state, errored):
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def run_tasks(
    func: Callable,
    args_list: Sequence[Tuple],
    parallel: bool = True,
    desc: str = None,
    show_progress: bool = True
) -> List[Any]:
    """
    Apply ``func`` to each argument tuple and return results in order.

    Parameters
    ----------
    func : callable
        Unit of work; must not mutate shared inputs
    args_list : list of tuple
        Positional arguments per unit
    parallel : bool
        Whether to use Dask parallelism (threaded scheduler)
    desc : str, optional
        Progress bar label
    show_progress : bool
        Show a tqdm progress bar

    Returns
    -------
    list
        One result per argument tuple
    """
    if not parallel:
        iterator = args_list
        if show_progress:
            iterator = tqdm(args_list, desc=desc, total=len(args_list))
        return [func(*args) for args in iterator]

    delayed_results = [dask.delayed(func)(*args) for args in args_list]
    if show_progress:
        with TqdmCallback(desc=desc):
            results = dask.compute(*delayed_results, scheduler='threads')
    else:
        results = dask.compute(*delayed_results, scheduler='threads')
    return list(results)
