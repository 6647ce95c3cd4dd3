"""
buildwatch adapter module.

This module contains the polling engine: the fetcher, job discoverer, build
translator and stream producer, wired together by BuildServerAdapter.

Hosts create one adapter per configured server, initialize it once, run any
number of queries against it, and dispose it when done.
"""

from .adapter import AdapterState, BuildServerAdapter
from .settings import AdapterSettings

__all__ = ["AdapterSettings", "AdapterState", "BuildServerAdapter"]
