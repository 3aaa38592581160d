"""View state coordinator.

Tracks the active conversation scope, owns the reconciler and reaction
store for it, and turns user intents into backend writes with optimistic
local updates.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from chatsync.application.services.optimistic import OptimisticTracker
from chatsync.config.models import SyncConfig
from chatsync.domain.entities import (
    ChangeEvent,
    ChangeKind,
    ConversationScope,
    FileAttachment,
    Message,
    Reaction,
    ReactionCount,
    ReactionRef,
    ScopeKind,
    ThreadNode,
)
from chatsync.domain.exceptions import (
    ChatSyncError,
    DuplicateReaction,
    TransportError,
    WriteRejected,
)
from chatsync.domain.services import ChatBackend, MessageTreeReconciler, ReactionStore
from chatsync.infrastructure.events import EventDispatcher, event_handler
from chatsync.infrastructure.feed import EventFeedAdapter, FeedHandle, FeedStatus

logger = logging.getLogger(__name__)


class ScopeState(Enum):
    """Lifecycle of the active scope."""

    INACTIVE = "inactive"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    SWITCHING = "switching"


@dataclass(frozen=True)
class ConversationSnapshot:
    """Read-only state of the active conversation for presentation.

    Attributes:
        scope: Active scope (None when inactive).
        state: Scope lifecycle state.
        threads: Thread forest, roots oldest first.
        reactions: Reaction summaries of messages that have reactions.
        open_thread: The thread opened with open_thread(), if still present.
        reconnecting: Whether the feed is currently reconnecting.
    """

    scope: ConversationScope | None
    state: ScopeState
    threads: tuple[ThreadNode, ...] = ()
    reactions: dict[int, dict[str, ReactionCount]] = field(default_factory=dict)
    open_thread: ThreadNode | None = None
    reconnecting: bool = False


ChangeListener = Callable[[], None]


class ViewStateCoordinator:
    """Coordinates the active scope, its event feed, and user writes.

    All event handling runs on the event loop. Every write re-checks the
    activation generation after awaiting the backend, so results for a
    scope that is no longer active are discarded.
    """

    def __init__(
        self,
        backend: ChatBackend,
        feed: EventFeedAdapter,
        dispatcher: EventDispatcher,
        viewer_id: str,
        sync_config: SyncConfig | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            backend: Backend query/write API.
            feed: Event feed adapter. Its status and reconnect callbacks are
                taken over by the coordinator.
            dispatcher: Dispatcher the feed delivers change events to.
            viewer_id: The current user.
            sync_config: Sync tuning.
        """
        self._backend = backend
        self._feed = feed
        self._viewer_id = viewer_id
        self._config = sync_config or SyncConfig()

        self._scope: ConversationScope | None = None
        self._state = ScopeState.INACTIVE
        self._generation = 0
        self._handle: FeedHandle | None = None
        self._switch_lock = asyncio.Lock()
        self._reconnecting = False
        self._open_thread_id: int | None = None
        self._listeners: list[ChangeListener] = []

        self._tracker = OptimisticTracker(self._config.optimistic_match_window_seconds)
        self._reconciler = self._new_reconciler()
        self._reactions = ReactionStore(viewer_id)

        dispatcher.register_handler(self.on_message_changed)
        dispatcher.register_handler(self.on_message_deleted)
        dispatcher.register_handler(self.on_reaction_changed)
        dispatcher.register_handler(self.on_file_attached)
        feed.set_status_listener(self._on_feed_status)
        feed.set_reconnect_listener(self._on_reconnect)

    @property
    def scope(self) -> ConversationScope | None:
        return self._scope

    @property
    def state(self) -> ScopeState:
        return self._state

    @property
    def viewer_id(self) -> str:
        return self._viewer_id

    @property
    def is_reconnecting(self) -> bool:
        return self._reconnecting

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a callback invoked after every visible state change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        self._listeners.remove(listener)

    # ----- read side -----

    def view(self) -> tuple[ThreadNode, ...]:
        return self._reconciler.view()

    def messages(self) -> list[Message]:
        return self._reconciler.messages()

    def reactions(self, message_id: int) -> dict[str, ReactionCount]:
        return self._reactions.summary(message_id)

    def thread(self) -> ThreadNode | None:
        """Get the open thread, or None if none is open or it was removed."""
        if self._open_thread_id is None:
            return None
        return self._reconciler.thread(self._open_thread_id)

    def snapshot(self) -> ConversationSnapshot:
        """Capture the current state for rendering."""
        threads = self._reconciler.view()
        reactions = {}
        for root in threads:
            for node in root.walk():
                summary = self._reactions.summary(node.id)
                if summary:
                    reactions[node.id] = summary
        return ConversationSnapshot(
            scope=self._scope,
            state=self._state,
            threads=threads,
            reactions=reactions,
            open_thread=self.thread(),
            reconnecting=self._reconnecting,
        )

    # ----- scope lifecycle -----

    async def set_active_scope(self, scope: ConversationScope) -> None:
        """Make a scope active.

        The previous subscription is torn down first and its state
        discarded. The new scope is subscribed before the initial fetch so
        no change between the two is missed.

        Args:
            scope: Conversation to activate.
        """
        async with self._switch_lock:
            if scope == self._scope and self._state is ScopeState.ACTIVE:
                return

            self._generation += 1
            generation = self._generation
            if self._handle is not None:
                self._state = ScopeState.SWITCHING
                logger.info("Switching scope %s -> %s", self._scope, scope)
                handle, self._handle = self._handle, None
                await self._feed.unsubscribe(handle)

            self._scope = scope
            self._reset()
            self._state = ScopeState.SUBSCRIBING
            self._notify()

            self._handle = await self._feed.subscribe(scope)
            await self._seed(scope, generation)

            self._state = ScopeState.ACTIVE
            logger.info("Scope %s active with %d message(s)", scope, len(self._reconciler))
            self._notify()

    async def close(self) -> None:
        """Tear down the active scope."""
        async with self._switch_lock:
            self._generation += 1
            if self._handle is not None:
                handle, self._handle = self._handle, None
                await self._feed.unsubscribe(handle)
            self._scope = None
            self._reset()
            self._state = ScopeState.INACTIVE
            self._notify()

    def open_thread(self, message_id: int) -> ThreadNode | None:
        """Open a message's thread.

        Args:
            message_id: Thread root.

        Returns:
            The thread, or None if the message is not loaded.
        """
        self._open_thread_id = message_id
        self._notify()
        return self.thread()

    def close_thread(self) -> None:
        if self._open_thread_id is not None:
            self._open_thread_id = None
            self._notify()

    # ----- writes -----

    async def send(
        self,
        body: str,
        attachments: Sequence[FileAttachment] = (),
        parent_id: int | None = None,
    ) -> Message:
        """Send a message to the active scope.

        A provisional message is shown immediately and replaced by the
        stored one when either the write returns or the feed echoes it.

        Args:
            body: Message text.
            attachments: Files to attach.
            parent_id: Message to reply to.

        Returns:
            The stored message.

        Raises:
            WriteRejected: The backend refused the message.
            TransportError: The backend could not be reached.
        """
        scope, generation = self._require_scope()
        if parent_id is not None and parent_id < 0:
            raise WriteRejected("send", "cannot reply to an unconfirmed message")

        nonce = uuid.uuid4().hex
        provisional_id = self._tracker.next_provisional_id()
        provisional = Message(
            id=provisional_id,
            body=body,
            author_id=self._viewer_id,
            created_at=datetime.now(timezone.utc),
            channel_id=scope.channel_id if scope.kind is ScopeKind.CHANNEL else None,
            receiver_id=scope.peer_id if scope.kind is ScopeKind.DIRECT else None,
            parent_id=parent_id,
            attachments=tuple(replace(a, message_id=provisional_id) for a in attachments),
            nonce=nonce,
        )
        self._tracker.track(provisional)
        self._reconciler.apply_insert(provisional)
        self._notify()

        try:
            stored = await self._backend.insert_message(
                scope, body, attachments, parent_id, nonce
            )
        except (WriteRejected, TransportError) as e:
            logger.warning("Send to %s failed: %s", scope, e)
            if generation == self._generation and self._tracker.pop(nonce) is not None:
                self._reconciler.discard(provisional_id)
                self._notify()
            raise

        if generation != self._generation:
            logger.info(
                "Discarding confirmation of message %d for inactive scope %s",
                stored.id,
                scope,
            )
            return stored

        if self._tracker.pop(nonce) is not None:
            changed = self._reconciler.confirm_provisional(provisional_id, stored)
        else:
            # Already confirmed by the feed
            changed = self._reconciler.apply_insert(stored)
        if changed:
            self._notify()
        return stored

    async def react(self, message_id: int, emoji: str) -> None:
        """Add the viewer's reaction. Adding an existing reaction is a no-op.

        Raises:
            WriteRejected: The backend refused the reaction.
            TransportError: The backend could not be reached.
        """
        _, generation = self._require_scope()
        if message_id < 0:
            raise WriteRejected("react", "message is not confirmed yet")

        reaction = Reaction(message_id, emoji, self._viewer_id)
        if not self._reactions.add(reaction):
            return
        self._notify()

        try:
            await self._backend.insert_reaction(message_id, emoji)
        except DuplicateReaction:
            logger.debug("Reaction %s on %d already stored", emoji, message_id)
        except (WriteRejected, TransportError) as e:
            logger.warning("React %s on %d failed: %s", emoji, message_id, e)
            if generation == self._generation and self._reactions.remove(reaction):
                self._notify()
            raise

    async def unreact(self, message_id: int, emoji: str) -> None:
        """Remove the viewer's reaction. Removing a missing reaction is a no-op.

        Raises:
            WriteRejected: The backend refused the removal.
            TransportError: The backend could not be reached.
        """
        _, generation = self._require_scope()
        reaction = Reaction(message_id, emoji, self._viewer_id)
        if not self._reactions.remove(reaction):
            return
        self._notify()

        try:
            await self._backend.remove_reaction(message_id, emoji)
        except (WriteRejected, TransportError) as e:
            logger.warning("Unreact %s on %d failed: %s", emoji, message_id, e)
            if generation == self._generation and self._reactions.add(reaction):
                self._notify()
            raise

    async def toggle_reaction(self, message_id: int, emoji: str) -> bool:
        """React, or unreact if the viewer already reacted with this emoji.

        Returns:
            True if the viewer's reaction is now present.
        """
        if self._reactions.contains(message_id, emoji, self._viewer_id):
            await self.unreact(message_id, emoji)
            return False
        await self.react(message_id, emoji)
        return True

    # ----- feed event handlers -----

    @event_handler(ChangeKind.MESSAGE_INSERTED, ChangeKind.MESSAGE_UPDATED)
    async def on_message_changed(self, event: ChangeEvent) -> None:
        """Fold an inserted or updated message into the tree."""
        if not self._accepts(event):
            return
        assert isinstance(event.payload, Message)
        message = event.payload

        provisional = self._tracker.resolve(message)
        if provisional is not None:
            changed = self._reconciler.confirm_provisional(provisional.id, message)
        elif event.kind is ChangeKind.MESSAGE_INSERTED:
            changed = self._reconciler.apply_insert(message)
        else:
            changed = self._reconciler.apply_update(message)
        if changed:
            self._notify()

    @event_handler(ChangeKind.MESSAGE_DELETED)
    async def on_message_deleted(self, event: ChangeEvent) -> None:
        """Remove a deleted message."""
        if not self._accepts(event):
            return
        assert isinstance(event.payload, int)
        if self._reconciler.apply_delete(event.payload):
            self._reactions.drop_message(event.payload)
            self._notify()

    @event_handler(ChangeKind.REACTION_ADDED, ChangeKind.REACTION_REMOVED)
    async def on_reaction_changed(self, event: ChangeEvent) -> None:
        """Fold a reaction change into the reaction store."""
        if not self._accepts(event):
            return
        payload = event.payload
        if event.kind is ChangeKind.REACTION_ADDED:
            assert isinstance(payload, Reaction)
            changed = self._reactions.add(payload)
        elif isinstance(payload, ReactionRef):
            changed = self._reactions.remove_by_row_id(payload.row_id) is not None
        else:
            assert isinstance(payload, Reaction)
            changed = self._reactions.remove(payload)
        if changed:
            self._notify()

    @event_handler(ChangeKind.FILE_ATTACHED)
    async def on_file_attached(self, event: ChangeEvent) -> None:
        """Attach a file to its message."""
        if not self._accepts(event):
            return
        assert isinstance(event.payload, FileAttachment)
        if self._reconciler.attach_file(event.payload):
            self._notify()

    # ----- internals -----

    def _accepts(self, event: ChangeEvent) -> bool:
        if event.scope != self._scope or self._state not in (
            ScopeState.SUBSCRIBING,
            ScopeState.ACTIVE,
        ):
            logger.debug(
                "Dropping %s for scope %s (active: %s)",
                event.kind.value,
                event.scope,
                self._scope,
            )
            return False
        return True

    def _require_scope(self) -> tuple[ConversationScope, int]:
        if self._scope is None or self._state not in (
            ScopeState.SUBSCRIBING,
            ScopeState.ACTIVE,
        ):
            raise RuntimeError("No active conversation scope")
        return self._scope, self._generation

    def _new_reconciler(self) -> MessageTreeReconciler:
        return MessageTreeReconciler(file_buffer_seconds=self._config.file_buffer_seconds)

    def _reset(self) -> None:
        self._reconciler = self._new_reconciler()
        self._reactions = ReactionStore(self._viewer_id)
        self._tracker.clear()
        self._open_thread_id = None
        self._reconnecting = False

    async def _fetch(
        self, scope: ConversationScope, generation: int
    ) -> tuple[list[Message], list[Reaction]] | None:
        try:
            messages = await self._backend.fetch_initial_messages(scope)
            reactions = (
                await self._backend.fetch_reactions([m.id for m in messages])
                if messages
                else []
            )
        except ChatSyncError as e:
            # Keep the scope live on whatever the feed delivers
            logger.warning("Fetching %s failed: %s", scope, e)
            return None
        if generation != self._generation:
            logger.debug("Discarding fetch for inactive scope %s", scope)
            return None
        return messages, reactions

    async def _seed(self, scope: ConversationScope, generation: int) -> None:
        fetched = await self._fetch(scope, generation)
        if fetched is None:
            return
        messages, reactions = fetched

        # Insert semantics: anything the live feed delivered meanwhile wins
        for message in messages:
            self._reconciler.apply_insert(message)
        for reaction in reactions:
            self._reactions.add(reaction)

    async def _resync(self, scope: ConversationScope, generation: int) -> None:
        fetched = await self._fetch(scope, generation)
        if fetched is None:
            return
        messages, reactions = fetched

        # Upserts only: the feed is live again while the fetch runs, so a
        # missing row may just be newer than the snapshot. Removals missed
        # during the outage stay until the next activation.
        changed = False
        for message in messages:
            provisional = self._tracker.resolve(message)
            if provisional is not None:
                changed |= self._reconciler.confirm_provisional(provisional.id, message)
            else:
                changed |= self._reconciler.apply_update(message)
        for reaction in reactions:
            changed |= self._reactions.add(reaction)

        logger.info("Resynced %s: %d message(s)", scope, len(messages))
        if changed:
            self._notify()

    def _on_feed_status(self, scope: ConversationScope, status: FeedStatus) -> None:
        if scope != self._scope:
            return
        reconnecting = status is FeedStatus.RECONNECTING
        if reconnecting != self._reconnecting:
            self._reconnecting = reconnecting
            self._notify()

    async def _on_reconnect(self, scope: ConversationScope) -> None:
        if scope != self._scope or not self._config.resync_on_reconnect:
            return
        await self._resync(scope, self._generation)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Error in change listener")
