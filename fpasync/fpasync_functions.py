import datetime
import re
from typing import Any, Callable, Dict, List, Optional

from fpasync.fpasync_datatypes import plain

_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')


class SyncFunction:
    """A plain extension function: answered within the pass, never intercepted."""

    def __init__(self, name: str, fn: Callable[..., Any], arity: Dict[int, List[str]]):
        self.name = name
        self.fn = fn
        self.arity = arity

    def __call__(self, inputs: Any, *args: Any) -> List[Any]:
        values = inputs if isinstance(inputs, (list, tuple)) else [inputs]
        out = []
        for value in values:
            result = self.fn(plain(value), *args)
            if result is not None:
                out.append(result)
        return out

    def __repr__(self) -> str:
        return f"<SyncFunction {self.name}>"


def birth_date_to_age(birth_date: Any, today: Optional[datetime.date] = None) -> Optional[int]:
    """Whole years between a YYYY-MM-DD date and today; None for anything else."""
    text = str(birth_date) if birth_date is not None else ''
    if not _DATE_RE.match(text):
        return None
    try:
        birth = datetime.date.fromisoformat(text)
    except ValueError:
        return None
    today = today or datetime.date.today()
    age = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        age -= 1
    return age


def standard_functions() -> Dict[str, SyncFunction]:
    return {
        'birthDateToAge': SyncFunction('birthDateToAge', birth_date_to_age, {0: []}),
    }
