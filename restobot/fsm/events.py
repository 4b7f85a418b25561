from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

MAX_BUTTONS = 3
MAX_LIST_ROWS = 10
MAX_BUTTON_TITLE = 20
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72


# --- inbound -------------------------------------------------------------


@dataclass(frozen=True)
class TextInput:
    text: str

    @property
    def normalized(self) -> str:
        return " ".join(self.text.lower().split())


@dataclass(frozen=True)
class OptionInput:
    option_id: str


UserInput = Union[TextInput, OptionInput]


@dataclass(frozen=True)
class InboundEvent:
    """One message from a customer: free text, a tapped button/list row, or both."""

    customer_id: str
    text: str | None = None
    selected_option_id: str | None = None

    def to_input(self) -> UserInput:
        option_id = (self.selected_option_id or "").strip().lower()
        if option_id:
            return OptionInput(option_id)
        return TextInput((self.text or "").strip())


# --- outbound ------------------------------------------------------------


@dataclass(frozen=True)
class Option:
    id: str
    title: str


@dataclass(frozen=True)
class ListRow:
    id: str
    title: str
    description: str = ""


@dataclass(frozen=True)
class ListSection:
    title: str
    rows: tuple[ListRow, ...]


@dataclass(frozen=True)
class SendText:
    body: str


@dataclass(frozen=True)
class SendButtons:
    body: str
    options: tuple[Option, ...]

    def __post_init__(self) -> None:
        if not self.options:
            raise ValueError("SendButtons needs at least one option")
        if len(self.options) > MAX_BUTTONS:
            raise ValueError(f"WhatsApp allows at most {MAX_BUTTONS} buttons, got {len(self.options)}")


@dataclass(frozen=True)
class SendList:
    body: str
    button_label: str
    sections: tuple[ListSection, ...]


OutboundMessage = Union[SendText, SendButtons, SendList]


def buttons(body: str, *options: tuple[str, str]) -> SendButtons:
    return SendButtons(body, tuple(Option(option_id, title[:MAX_BUTTON_TITLE]) for option_id, title in options))


def single_section_list(body: str, button_label: str, section_title: str, rows: list[ListRow]) -> SendList:
    trimmed = tuple(
        ListRow(row.id, row.title[:MAX_ROW_TITLE], row.description[:MAX_ROW_DESCRIPTION])
        for row in rows[:MAX_LIST_ROWS]
    )
    return SendList(body, button_label[:MAX_BUTTON_TITLE], (ListSection(section_title[:MAX_ROW_TITLE], trimmed),))


# --- commands ------------------------------------------------------------


@dataclass(frozen=True)
class StartCheckout:
    pass


@dataclass(frozen=True)
class CreateReservation:
    pass


Command = Union[StartCheckout, CreateReservation]


@dataclass
class EngineResult:
    messages: list[OutboundMessage] = field(default_factory=list)
    commands: list[Command] = field(default_factory=list)
