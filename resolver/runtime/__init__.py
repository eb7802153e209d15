from .components import ResolverComponents, build_components
from .logging import setup_logger
from .loop import ResolverLoop, TickSummary, bootstrap_dependencies
from .settings import AppSettings, ConfigurationError

__all__ = [
    "AppSettings",
    "ConfigurationError",
    "ResolverComponents",
    "ResolverLoop",
    "TickSummary",
    "bootstrap_dependencies",
    "build_components",
    "setup_logger",
]
