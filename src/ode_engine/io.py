# src/ode_engine/io.py
"""HDF5 persistence of continuous output models.

Layout::

    /                      attrs: format_version, class, forward, n_steps
    /steps/<index>         attrs: kind, previous_time, current_time,
                                  interpolated_time, forward
    /steps/<index>/previous_state, current_state, stages   (datasets)

Step groups are named with zero-padded indices so lexical and integration
order agree.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import h5py
import numpy as np

from ode_engine.continuous_output import ContinuousOutputModel
from ode_engine.interpolators import StepInterpolator

HDF5_VERSION = "1.0"
"""HDF5 format version for continuous output data."""

_STEP_ATTRS = ("kind", "previous_time", "current_time", "interpolated_time", "forward")
_STEP_DATASETS = ("previous_state", "current_state", "stages")

_CLASS_MISMATCH_MSG = "File does not hold a {expected} (found {found!r})."
_VERSION_MISMATCH_MSG = "Unsupported format_version {found!r}; expected {expected!r}."


def _write_dataset(
    group: h5py.Group,
    name: str,
    data: np.ndarray,
    *,
    compression: str | None,
    level: int,
) -> None:
    """Write one array, compressing only non-scalar data."""
    arr = np.asarray(data)
    if compression is not None and arr.size > 1:
        group.create_dataset(name, data=arr, compression=compression, compression_opts=level)
    else:
        group.create_dataset(name, data=arr)


def save_continuous_output(
    model: ContinuousOutputModel,
    path: str | Path,
    *,
    compression: str | None = "gzip",
    level: int = 4,
) -> None:
    """Serialize a continuous output model to HDF5.

    Args:
        model: Model to save.
        path: Destination file (overwritten).
        compression: h5py compression filter, or None.
        level: Compression level.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with h5py.File(path, "w") as f:
        f.attrs["format_version"] = HDF5_VERSION
        f.attrs["class"] = model.__class__.__name__
        f.attrs["forward"] = bool(model.forward)
        f.attrs["n_steps"] = len(model)

        steps = f.create_group("steps")
        width = max(5, len(str(len(model))))
        for index, step in enumerate(model):
            data = step.state_dict()
            grp = steps.create_group(str(index).zfill(width))
            for key in _STEP_ATTRS:
                grp.attrs[key] = data[key]
            for key in _STEP_DATASETS:
                _write_dataset(grp, key, data[key], compression=compression, level=level)


def load_continuous_output(path: str | Path) -> ContinuousOutputModel:
    """Load a continuous output model from HDF5.

    Args:
        path: File written by :func:`save_continuous_output`.

    Raises:
        FileNotFoundError: If path does not exist.
        ValueError: If the file holds another kind of data.

    Returns:
        Model whose queries match the saved one.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)

    model = ContinuousOutputModel()
    with h5py.File(path, "r") as f:
        found = f.attrs.get("class", "")
        if found != ContinuousOutputModel.__name__:
            raise ValueError(
                _CLASS_MISMATCH_MSG.format(expected=ContinuousOutputModel.__name__, found=found)
            )
        version = f.attrs.get("format_version", "")
        if version != HDF5_VERSION:
            raise ValueError(
                _VERSION_MISMATCH_MSG.format(found=version, expected=HDF5_VERSION)
            )

        steps = f["steps"]
        for name in sorted(steps.keys()):
            grp = steps[name]
            data: dict[str, Any] = {key: grp.attrs[key] for key in _STEP_ATTRS}
            for key in _STEP_DATASETS:
                data[key] = grp[key][()]
            model._push(StepInterpolator.from_state_dict(data))

    return model
