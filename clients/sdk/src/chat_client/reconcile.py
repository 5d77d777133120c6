"""Pure reconciliation of optimistic and server-confirmed messages.

``reconcile(state, event)`` never mutates its inputs and performs no I/O, so
any interleaving of local sends, live events and HTTP results can be
replayed deterministically.

Ordering rule: confirmed messages are ordered by server ``createdAt`` (a
stable sort, so ties keep their list position); unconfirmed temp messages
always trail the confirmed ones in the order they were sent.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field, replace
from functools import reduce
from typing import Any, FrozenSet, Iterable, Mapping, Tuple, Union

TEMP_PREFIX = "tmp-"


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_temp_id() -> str:
    return f"{TEMP_PREFIX}{secrets.token_hex(6)}"


@dataclass(frozen=True)
class ChatMessage:
    id: str
    sender: str
    receiver: str
    content: str
    created_at_ms: int
    delivered: bool = False
    seen: bool = False
    temp: bool = False

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "ChatMessage":
        seen = bool(data.get("seen"))
        return cls(
            id=str(data["id"]),
            sender=str(data["sender"]),
            receiver=str(data["receiver"]),
            content=str(data["content"]),
            created_at_ms=int(data["createdAt"]),
            delivered=bool(data.get("delivered")) or seen,
            seen=seen,
        )

    def confirms(self, temp: "ChatMessage") -> bool:
        """True when this server message is the confirmed form of ``temp``."""

        return (
            temp.temp
            and not self.temp
            and temp.sender == self.sender
            and temp.receiver == self.receiver
            and temp.content == self.content
        )


def make_temp_message(sender: str, receiver: str, content: str, *, now_ms: int | None = None) -> ChatMessage:
    return ChatMessage(
        id=new_temp_id(),
        sender=sender,
        receiver=receiver,
        content=content,
        created_at_ms=_now_ms() if now_ms is None else now_ms,
        temp=True,
    )


@dataclass(frozen=True)
class ConversationState:
    messages: Tuple[ChatMessage, ...] = ()
    known_ids: FrozenSet[str] = field(default_factory=frozenset)

    def get(self, message_id: str) -> ChatMessage | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    @property
    def temps(self) -> Tuple[ChatMessage, ...]:
        return tuple(m for m in self.messages if m.temp)


@dataclass(frozen=True)
class LocalSend:
    message: ChatMessage


@dataclass(frozen=True)
class Confirmed:
    message: ChatMessage


@dataclass(frozen=True)
class SendFailed:
    temp_id: str


@dataclass(frozen=True)
class AckUpdate:
    message_id: str
    delivered: bool = False
    seen: bool = False


@dataclass(frozen=True)
class Loaded:
    messages: Tuple[ChatMessage, ...]


Event = Union[LocalSend, Confirmed, SendFailed, AckUpdate, Loaded]


def _ordered(messages: Iterable[ChatMessage]) -> Tuple[ChatMessage, ...]:
    return tuple(sorted(messages, key=lambda m: (m.temp, 0 if m.temp else m.created_at_ms)))


def _merge_flags(current: ChatMessage, incoming: ChatMessage) -> ChatMessage:
    seen = current.seen or incoming.seen
    return replace(incoming, seen=seen, delivered=current.delivered or incoming.delivered or seen)


def _local_send(state: ConversationState, event: LocalSend) -> ConversationState:
    message = event.message
    if not message.temp or message.id in state.known_ids:
        return state
    return ConversationState(
        messages=_ordered(state.messages + (message,)),
        known_ids=state.known_ids | {message.id},
    )


def _confirmed(state: ConversationState, event: Confirmed) -> ConversationState:
    message = event.message
    if message.id in state.known_ids:
        return state
    messages = list(state.messages)
    known = set(state.known_ids)
    for index, existing in enumerate(messages):
        if message.confirms(existing):
            messages[index] = message
            known.discard(existing.id)
            break
    else:
        messages.append(message)
    known.add(message.id)
    return ConversationState(messages=_ordered(messages), known_ids=frozenset(known))


def _send_failed(state: ConversationState, event: SendFailed) -> ConversationState:
    if event.temp_id not in state.known_ids:
        return state
    return ConversationState(
        messages=tuple(m for m in state.messages if not (m.temp and m.id == event.temp_id)),
        known_ids=state.known_ids - {event.temp_id},
    )


def _ack(state: ConversationState, event: AckUpdate) -> ConversationState:
    changed = False
    messages = []
    for message in state.messages:
        if message.id == event.message_id and not message.temp:
            seen = message.seen or event.seen
            delivered = message.delivered or event.delivered or seen
            if (seen, delivered) != (message.seen, message.delivered):
                message = replace(message, seen=seen, delivered=delivered)
                changed = True
        messages.append(message)
    if not changed:
        return state
    return ConversationState(messages=tuple(messages), known_ids=state.known_ids)


def _loaded(state: ConversationState, event: Loaded) -> ConversationState:
    previous = {m.id: m for m in state.messages if not m.temp}
    confirmed: list[ChatMessage] = []
    seen_ids: set[str] = set()
    for message in event.messages:
        if message.id in seen_ids:
            continue
        seen_ids.add(message.id)
        current = previous.get(message.id)
        confirmed.append(_merge_flags(current, message) if current else message)
    # confirmed messages outside this page, e.g. live arrivals during the fetch
    confirmed.extend(m for m in state.messages if not m.temp and m.id not in seen_ids)

    # history messages we had never seen may confirm pending temps
    fresh = [m for m in confirmed if m.id not in state.known_ids]
    temps: list[ChatMessage] = []
    for temp in state.temps:
        match = next((m for m in fresh if m.confirms(temp)), None)
        if match is not None:
            fresh.remove(match)
            continue
        temps.append(temp)

    messages = _ordered(confirmed + temps)
    return ConversationState(messages=messages, known_ids=frozenset(m.id for m in messages))


_REDUCERS = {
    LocalSend: _local_send,
    Confirmed: _confirmed,
    SendFailed: _send_failed,
    AckUpdate: _ack,
    Loaded: _loaded,
}


def reconcile(state: ConversationState, event: Event) -> ConversationState:
    reducer = _REDUCERS.get(type(event))
    if reducer is None:
        raise TypeError(f"unsupported event: {event!r}")
    return reducer(state, event)


def reconcile_all(events: Iterable[Event], state: ConversationState | None = None) -> ConversationState:
    return reduce(reconcile, events, state or ConversationState())
