from .gpu import *  # noqa: F401,F403
from .gpu import __all__

__version__ = "0.1.0"
