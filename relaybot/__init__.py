"""
relaybot - an LLM chat agent for OneBot-style messaging bridges
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("relaybot")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
__logo__ = "🛰️"
