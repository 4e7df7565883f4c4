"""
Observation container shared by the moment evaluator and the estimators.
"""

from dataclasses import dataclass, fields
from typing import Optional, Union

import numpy as np
import torch

from .exceptions import ConfigurationError

ArrayLike = Union[np.ndarray, torch.Tensor, list]


@dataclass
class RELData:
    """
    Container for the estimation sample (y, X, Z).

    Any of the three blocks may be omitted; a moment function only reads the
    ones it needs. The sample is read-only for the whole estimation.

    Attributes:
        y: (n_obs,) outcome
        X: (n_obs, n_regressors) regressors entering the structural model
        Z: (n_obs, n_instruments) instruments or moment-level observables
    """

    y: Optional[torch.Tensor] = None
    X: Optional[torch.Tensor] = None
    Z: Optional[torch.Tensor] = None

    @classmethod
    def from_arrays(
        cls,
        y: Optional[ArrayLike] = None,
        X: Optional[ArrayLike] = None,
        Z: Optional[ArrayLike] = None,
        device: Optional[Union[torch.device, str]] = None,
    ) -> "RELData":
        """Build a float64 container from numpy arrays, lists or tensors."""

        def _convert(a):
            if a is None:
                return None
            return torch.as_tensor(np.asarray(a) if isinstance(a, list) else a,
                                   dtype=torch.float64, device=device)

        data = cls(y=_convert(y), X=_convert(X), Z=_convert(Z))
        data.validate()
        return data

    @property
    def n_obs(self) -> int:
        for block in (self.y, self.X, self.Z):
            if block is not None:
                return int(block.shape[0])
        return 0

    def validate(self) -> None:
        """
        Check that the blocks describe the same observations.

        Raises:
            ConfigurationError: If no block is given, ranks are wrong, lengths
                differ or the sample is empty.
        """
        blocks = {f.name: getattr(self, f.name) for f in fields(self)}
        given = {k: v for k, v in blocks.items() if v is not None}
        if not given:
            raise ConfigurationError("At least one of y, X or Z must be provided")

        if self.y is not None and self.y.dim() != 1:
            raise ConfigurationError(f"y must be 1-dimensional, got shape {tuple(self.y.shape)}")
        for name in ("X", "Z"):
            block = blocks[name]
            if block is not None and block.dim() != 2:
                raise ConfigurationError(
                    f"{name} must be 2-dimensional, got shape {tuple(block.shape)}"
                )

        n_obs = self.n_obs
        if not all(v.shape[0] == n_obs for v in given.values()):
            lengths = {k: int(v.shape[0]) for k, v in given.items()}
            raise ConfigurationError(f"All blocks must have the same length, got {lengths}")
        if n_obs == 0:
            raise ConfigurationError("Data contains zero observations")

    def to(self, device: Union[torch.device, str]) -> "RELData":
        return RELData(
            **{
                f.name: getattr(self, f.name).to(device)
                if getattr(self, f.name) is not None
                else None
                for f in fields(self)
            }
        )

    def to_dict(self) -> dict:
        """Convert to dict, dropping absent blocks."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }
