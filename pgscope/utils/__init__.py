from pgscope.utils import logging

__all__ = ("logging",)
