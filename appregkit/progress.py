from __future__ import annotations

from typing import Callable, Optional


ProgressCallback = Callable[[int, Optional[int]], None]


class PageProgress:
    """
    Progress tracker for sequential upstream paging.

    - Maintains a single tqdm bar (if a tqdm factory is given) counting records.
    - The total is unknown until the last page arrives; it is set then so the bar closes at 100%.
    - An optional callback receives (current, total) after every page. It is purely observational.
    """

    def __init__(
        self,
        *,
        desc: str,
        unit: str,
        tqdm_factory: Optional[Callable] = None,
        callback: Optional[ProgressCallback] = None,
    ) -> None:
        self._desc = desc
        self._unit = unit
        self._tqdm = tqdm_factory(total=None, desc=desc, unit=unit, leave=False) if tqdm_factory else None
        self._callback = callback
        self.current = 0
        self.pages = 0
        self.total: Optional[int] = None

    def __enter__(self) -> "PageProgress":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def page_done(self, records: int, *, last: bool) -> None:
        self.pages += 1
        self.current += records
        if last:
            self.total = self.current
        if self._tqdm is not None:
            if last:
                self._tqdm.total = self.total
            self._tqdm.update(records)
            self._tqdm.set_postfix_str(f"pages:{self.pages}", refresh=True)
        if self._callback is not None:
            self._callback(self.current, self.total)

    def close(self) -> None:
        if self._tqdm is not None:
            self._tqdm.close()
            self._tqdm = None
