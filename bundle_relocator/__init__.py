"""bundle-relocator.

Turns a built executable into a self-contained app bundle: creates the
platform's bundle layout, copies the dynamic libraries the executable needs
into it and rewrites every load path so the bundle can be moved anywhere.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
