# Import all handlers so they register themselves.
from . import recommendations  # noqa: F401
