from typing import List, Optional, Type

from typing_extensions import Protocol


class HasId(Protocol):
    @property
    def id(self) -> str:
        ...


def label_or(name: Optional[str], fallback: str) -> str:
    """Return a display label, falling back when the name is missing or blank.

    >>> label_or("Drawing Package", "Unknown")
    'Drawing Package'
    >>> label_or("", "Unknown")
    'Unknown'
    >>> label_or(None, "Unknown")
    'Unknown'
    """
    if name is None or not name.strip():
        return fallback
    return name


def innermost_type(cls: Optional[Type]) -> Type:
    """Return the innermost type from a potentially nested type.

    >>> innermost_type(str)
    <class 'str'>
    >>> innermost_type(List[str])
    <class 'str'>
    >>> innermost_type(Optional[List[str]])
    <class 'str'>
    >>> innermost_type(None)
    <class 'NoneType'>
    """
    if cls is None:
        return type(None)
    inner = cls
    while getattr(inner, "__args__", None):
        inner = inner.__args__[0]
    return inner
