from abc import ABC, abstractmethod
from typing import Dict, Optional, Union

import torch

DeviceLike = Union[torch.device, str, None]


def resolve_device(device: DeviceLike = None) -> torch.device:
    """Requested device, or CUDA when available and CPU otherwise."""
    if device is None:
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(device)


class BaseEstimator(ABC):
    """Estimator skeleton: device placement and fitted parameters.

    Parameters
    ----------
    device : torch.device, str, or None, default=None
        Device on which moment functions are evaluated and fitted tensors are
        stored. None picks CUDA when available.

    Attributes
    ----------
    params : dict or None
        Fitted tensors keyed by name, None before ``fit``. Entries may be None
        when a quantity is undefined (e.g. weights at an infeasible estimate).
    """

    def __init__(self, device: DeviceLike = None):
        self.device = resolve_device(device)
        self.params: Optional[Dict[str, Optional[torch.Tensor]]] = None

    @abstractmethod
    def fit(self, *args, **kwargs) -> "BaseEstimator":
        raise NotImplementedError

    @property
    def is_fitted(self) -> bool:
        return bool(self.params)

    def to(self, device: DeviceLike) -> "BaseEstimator":
        """Move fitted tensors to ``device``; missing entries stay None."""
        self.device = resolve_device(device)
        if self.params:
            self.params = {
                name: None if value is None else value.to(self.device)
                for name, value in self.params.items()
            }
        return self
