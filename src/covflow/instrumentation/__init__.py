"""
Source instrumentation.

- transformer: Instrumenter, the line-preserving rewrite
- cache: InstrumentationCache
- loader: import hook executing tracked modules through a session
"""

from .cache import InstrumentationCache
from .loader import install_import_hook, uninstall_import_hook
from .transformer import InstrumentedSource, Instrumenter

__all__ = ["InstrumentationCache", "InstrumentedSource", "Instrumenter",
           "install_import_hook", "uninstall_import_hook"]
