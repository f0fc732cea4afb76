"""Small value helpers shared by handlers and repositories."""

from typing import Any, List


def split_list(value: Any) -> List[str]:
    """Turn a comma string or a sequence into a list of trimmed strings.

    None and empty input give an empty list.
    """
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple, set)):
        items = [str(v).strip() for v in value]
    else:
        items = [v.strip() for v in str(value).split(",")]
    return [v for v in items if v != ""]


def is_int_string(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("-"):
            text = text[1:]
        return text.isdigit()
    return False
