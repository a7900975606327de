from ._version import __version__
from .errors import InstallError
from .radius_config import RadiusPluginConfig
from .reconciler import ReconcileResult, Reconciler

__all__ = ["InstallError", "RadiusPluginConfig", "ReconcileResult", "Reconciler", "__version__"]
