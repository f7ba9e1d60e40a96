"""DNS-1035 label mangling for task, step and pipeline names."""

from __future__ import annotations

MAX_LABEL_LENGTH = 63

_HYPHEN_LIKE = (" ", "-", ".")


def mangle_label(body: str, suffix: str = "") -> str:
    """Turn free-form text into a label matching [a-z]([-a-z0-9]*[a-z0-9])?

    Uppercase ASCII is lowered, runs of spaces/hyphens/periods collapse into
    one hyphen, everything else (including non-ASCII) is dropped. Digits and
    hyphens are never written first. The body is truncated so that
    body + "-" + suffix fits in 63 characters; the suffix is never cut.
    """
    max_body_length = MAX_LABEL_LENGTH - len(suffix) - 1

    out: list[str] = []
    length = 0
    buffered_hyphen = False  # emitted only once another character follows
    for ch in body:
        to_write = 0
        if length:
            if ch in _HYPHEN_LIKE:
                buffered_hyphen = True
            elif "0" <= ch <= "9":
                to_write = 1

        if "A" <= ch <= "Z":
            ch = ch.lower()
            to_write = 1
        elif "a" <= ch <= "z":
            to_write = 1

        if not to_write:
            continue
        if buffered_hyphen:
            to_write += 1
        if length + to_write > max_body_length:
            break
        if buffered_hyphen:
            out.append("-")
            buffered_hyphen = False
        out.append(ch)
        length += to_write

    if suffix:
        out.append("-")
        out.append(suffix)
    return "".join(out)
