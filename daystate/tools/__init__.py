"""daystate.tools package

Command-line utilities over monthly state files (validate, offline merge,
path rename).

Keep this package's __init__ free of eager imports so `python -m
daystate.tools.<name>` has no import-time side effects.
"""

__all__: list[str] = []
