"""Serialization proxies for Python value types.

A guarded type substitutes a plain data carrier for itself whenever it is
serialized, and the carrier rebuilds the type through its ordinary validating
constructor on the way back in. Direct reconstruction of a guarded type from a
byte stream is always rejected.

Most users will use :py:mod:`proxy` to declare guarded types, and
:py:mod:`pickling` or :py:mod:`converter` to move them across a boundary.
"""

__version__ = "0.3.0"
