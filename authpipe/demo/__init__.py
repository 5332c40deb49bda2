"""
Demo module: a local provider and an end-to-end login walkthrough.
"""

from .provider import FakeProvider

__all__ = ["FakeProvider"]
