import re

_WS = re.compile(r"\s+")


def normalize_name(name: str | None) -> str:
    """Lower-case and drop every whitespace character."""
    return _WS.sub("", (name or "").lower())


def names_match(local_name: str | None, remote_name: str | None) -> bool:
    """
    Permissive match between a locally known name and a remote-reported one.

    True on exact match, when either contains the other, or (both longer than two
    characters) when the two-character prefix of either occurs in the other.
    Callers take the first matching row in remote order; this is not a best-match score.
    """
    n1 = normalize_name(local_name)
    n2 = normalize_name(remote_name)
    if not n1 or not n2:
        return False
    if n1 == n2 or n1 in n2 or n2 in n1:
        return True
    return len(n1) > 2 and len(n2) > 2 and (n2[:2] in n1 or n1[:2] in n2)
