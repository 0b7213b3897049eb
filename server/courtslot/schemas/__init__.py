"""Pydantic schemas for request/response validation."""

from .auth import *  # noqa: F403
from .booking import *  # noqa: F403
from .cart import *  # noqa: F403
from .common import *  # noqa: F403
from .health import *  # noqa: F403
from .maintenance import *  # noqa: F403
from .resource import *  # noqa: F403
from .waitlist import *  # noqa: F403
