from __future__ import annotations

from typing import Hashable, Iterable, List, Optional, TypeVar

from sqlglot import expressions as exp

T = TypeVar("T", bound=Hashable)


def normalize_identifier(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    return str(name).strip().strip("`").strip('"').lower()


def split_identifier(text: str) -> List[str]:
    """Split ``a.b.c`` (optionally back-quoted per part) into normalized parts."""
    parts: List[str] = []
    buf: List[str] = []
    quoted = False
    for ch in text.strip():
        if ch == "`":
            quoted = not quoted
        elif ch == "." and not quoted:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf))
    return [normalize_identifier(p) for p in parts if p.strip()]


def table_parts_of(node: exp.Table) -> List[str]:
    """Catalog / db / table parts of a table reference, outermost first."""
    parts = []
    for key in ("catalog", "db", "this"):
        part = node.args.get(key)
        if part is None:
            continue
        if isinstance(part, exp.Identifier):
            parts.append(part.name)
        elif isinstance(part, exp.Dot):
            parts.extend(p.name for p in part.flatten())
        elif isinstance(part, str):
            parts.append(part)
        else:
            parts.append(getattr(part, "name", None) or str(part))
    return [normalize_identifier(p) for p in parts if p]


def alias_to_str(alias_expr) -> Optional[str]:
    if not alias_expr:
        return None
    if isinstance(alias_expr, str):
        return alias_expr
    if isinstance(alias_expr, exp.TableAlias):
        ident = alias_expr.this
        if isinstance(ident, exp.Identifier):
            return ident.name or ident.this
        return str(ident) if ident else None
    if isinstance(alias_expr, exp.Identifier):
        return alias_expr.name or alias_expr.this
    name = getattr(alias_expr, "name", None)
    if name:
        return name
    return str(alias_expr)


def dedupe(items: Iterable[T]) -> List[T]:
    """Drop repeats, keeping first-seen order."""
    seen = set()
    out: List[T] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
