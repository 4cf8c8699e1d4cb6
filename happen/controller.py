from __future__ import annotations

from enum import Enum
from typing import Sequence

from .feeds import Item


class Mode(str, Enum):
    BROWSING = "browsing"
    FILTER_EDITING = "filter_editing"
    FILTER_ACTIVE = "filter_active"


def matches_filter(item: Item, lowered: str) -> bool:
    if not lowered:
        return True
    return (
        lowered in item.title.lower()
        or lowered in item.description.lower()
        or lowered in item.source.name.lower()
        or lowered in item.url.lower()
    )


class ListController:
    """Browsing, filtering and selection state for the aggregated item list.

    Only the event loop calls into this class. Selection survives refreshes by
    item id; indices are always re-derived from ``filtered``.
    """

    def __init__(self, visible: int = 1) -> None:
        self.items: tuple[Item, ...] = ()
        self.filtered: tuple[Item, ...] = ()
        self.filter_text = ""
        self.mode = Mode.BROWSING
        self.selected_id = ""
        self.selection = 0
        self.offset = 0
        self.visible = max(1, visible)

    @property
    def filtering(self) -> bool:
        return self.mode != Mode.BROWSING

    def ingest(self, items: Sequence[Item]) -> None:
        self.items = tuple(items)
        self._refilter()
        self._select_by_id(self.selected_id)

    def set_filter(self, text: str, editing: bool) -> None:
        if editing:
            self.mode = Mode.FILTER_EDITING
        elif text:
            self.mode = Mode.FILTER_ACTIVE
        else:
            self.mode = Mode.BROWSING
        self.filter_text = text

        before = len(self.filtered)
        self._refilter()
        if len(self.filtered) != before:
            self._select_by_id(self.selected_id)
        else:
            self._place(self.selection)

    def begin_filter(self) -> None:
        self.set_filter("", editing=True)

    def append_filter(self, char: str) -> None:
        self.set_filter(self.filter_text + char, editing=True)

    def delete_filter_char(self) -> None:
        self.set_filter(self.filter_text[:-1], editing=True)

    def commit_filter(self) -> None:
        self.set_filter(self.filter_text, editing=False)

    def cancel_filter(self) -> None:
        self.set_filter("", editing=False)

    def set_viewport(self, visible: int) -> None:
        self.visible = max(1, visible)
        if self.filtered:
            self._place(self.selection)

    def move(self, delta: int, force: bool = False) -> None:
        count = len(self.filtered)
        to = self.selection
        if force:
            if delta > 0 and to < self.visible:
                to = self.visible
            if delta < 0 and to >= count - self.visible:
                to = count - self.visible - 1
        self._place(to + delta)

    def selected_item(self) -> Item | None:
        if 0 <= self.selection < len(self.filtered):
            return self.filtered[self.selection]
        return None

    def visible_items(self) -> list[tuple[int, Item]]:
        end = min(len(self.filtered), self.offset + self.visible)
        return [(index, self.filtered[index]) for index in range(self.offset, end)]

    def _refilter(self) -> None:
        lowered = self.filter_text.lower() if self.filtering else ""
        self.filtered = tuple(item for item in self.items if matches_filter(item, lowered))

    def _select_by_id(self, wanted: str) -> None:
        for index, item in enumerate(self.filtered):
            if item.id == wanted:
                self._place(index)
                return
        self._place(0)

    def _place(self, index: int) -> None:
        count = len(self.filtered)
        if count == 0:
            self.selection = 0
            self.offset = 0
            self.selected_id = ""
            return
        index = max(0, min(index, count - 1))
        if index < self.offset:
            self.offset = index
        elif index >= self.offset + self.visible:
            self.offset = index - self.visible + 1
        self.selection = index
        self.selected_id = self.filtered[index].id
