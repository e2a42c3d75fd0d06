"""
Parley - Matrix transport client.

Created by orpheus497

Reference TransportClient backed by a Matrix homeserver through matrix-nio.
Matrix concepts map onto the agent's model as follows:

- rooms are conversations; a room with two members and no name is direct
- Matrix user IDs are inbox IDs, devices are installations
- power levels map to roles (>= 100 super-admin, >= 50 admin)
- joined / invited / left rooms map to consent allowed / unknown / denied
- sync ``next_batch`` tokens are cursors
- ``origin_server_ts`` is the message sequence; the newest event timestamp
  in a room is its version

nio reports failures as ErrorResponse objects rather than exceptions; they
are converted into TransportUnavailable, AuthenticationRejected or
InvalidMutation here, as are aiohttp and socket errors.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional

import aiohttp
from nio import AsyncClient, AsyncClientConfig, LoginResponse, RoomMessage
from nio import MatrixRoom as NioRoom
from nio.api import RoomPreset
from nio.responses import DeleteDevicesAuthResponse, ErrorResponse

from .config import Config
from .constants import (
    CONTENT_TYPE_TEXT,
    MATRIX_DEFAULT_HOMESERVER,
    MATRIX_DEVICE_NAME,
    MATRIX_POWER_ADMIN,
    MATRIX_POWER_MEMBER,
    MATRIX_POWER_SUPER_ADMIN,
    MATRIX_SYNC_TIMEOUT,
)
from .errors import AuthenticationRejected, ErrorCode, InvalidMutation, TransportUnavailable
from .models import (
    ConsentState,
    ConversationId,
    ConversationKind,
    InboxId,
    InboxState,
    InstallationId,
    Message,
    MessageId,
    PermissionPolicy,
    PermissionPolicySet,
    Role,
    SyncCursor,
    normalize_inbox_id,
    same_inbox,
)
from .transport import ConversationDelta, IdentityProvider, PullResult
from .utils import describe_error

logger = logging.getLogger(__name__)

# Message content keys for non-text content types
CONTENT_TYPE_KEY = "org.parley.content_type"
PAYLOAD_KEY = "org.parley.payload"

AUTH_ERRCODES = ("M_UNKNOWN_TOKEN", "M_MISSING_TOKEN", "M_USER_DEACTIVATED")
AUTH_OPERATIONS = ("login", "whoami", "rotate_credentials")

# Power level required by each policy; DENY is above any user level
POLICY_LEVELS = {
    PermissionPolicy.ALLOW: MATRIX_POWER_MEMBER,
    PermissionPolicy.ADMIN_ONLY: MATRIX_POWER_ADMIN,
    PermissionPolicy.SUPER_ADMIN_ONLY: MATRIX_POWER_SUPER_ADMIN,
    PermissionPolicy.DENY: MATRIX_POWER_SUPER_ADMIN + 1,
}

ROLE_LEVELS = {
    Role.MEMBER: MATRIX_POWER_MEMBER,
    Role.ADMIN: MATRIX_POWER_ADMIN,
    Role.SUPER_ADMIN: MATRIX_POWER_SUPER_ADMIN,
}

METADATA_EVENTS = {
    "name": ("m.room.name", "name"),
    "description": ("m.room.topic", "topic"),
    "image_url": ("m.room.avatar", "url"),
}


@dataclass
class MatrixConfig:
    """Configuration for the Matrix transport."""

    homeserver_url: str = MATRIX_DEFAULT_HOMESERVER
    user_id: str = ""
    password: str = ""
    access_token: str = ""
    device_id: str = ""
    device_name: str = MATRIX_DEVICE_NAME
    store_path: Optional[Path] = None
    sync_timeout: int = MATRIX_SYNC_TIMEOUT

    @classmethod
    def from_config(cls, config: Config, data_dir: Optional[Path] = None) -> "MatrixConfig":
        return cls(
            homeserver_url=config.get("matrix", "homeserver", MATRIX_DEFAULT_HOMESERVER),
            user_id=config.get("matrix", "user_id", ""),
            password=config.get("matrix", "password", ""),
            access_token=config.get("matrix", "access_token", ""),
            device_name=config.get("matrix", "device_name", MATRIX_DEVICE_NAME),
            store_path=Path(data_dir) / "matrix" if data_dir else None,
            sync_timeout=int(config.get("matrix", "sync_timeout", MATRIX_SYNC_TIMEOUT)),
        )


def role_for_level(level: int) -> Role:
    if level >= MATRIX_POWER_SUPER_ADMIN:
        return Role.SUPER_ADMIN
    if level >= MATRIX_POWER_ADMIN:
        return Role.ADMIN
    return Role.MEMBER


def power_level_override(creator: str, policy: PermissionPolicySet) -> Dict[str, Any]:
    """Initial m.room.power_levels content enforcing ``policy``."""
    return {
        "users": {creator: MATRIX_POWER_SUPER_ADMIN},
        "invite": POLICY_LEVELS[policy.add_member],
        "kick": POLICY_LEVELS[policy.remove_member],
        "ban": POLICY_LEVELS[policy.remove_member],
        "events": {
            "m.room.name": POLICY_LEVELS[policy.update_name],
            "m.room.topic": POLICY_LEVELS[policy.update_description],
            "m.room.avatar": POLICY_LEVELS[policy.update_image_url],
            "m.room.power_levels": POLICY_LEVELS[policy.add_admin],
        },
    }


def encode_content(payload: Any, content_type: str) -> Dict[str, Any]:
    """Matrix event content for a message payload."""
    if content_type == CONTENT_TYPE_TEXT:
        return {"msgtype": "m.text", "body": str(payload)}
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return {
        "msgtype": "m.text",
        "body": body,
        CONTENT_TYPE_KEY: content_type,
        PAYLOAD_KEY: payload,
    }


def decode_event(room_id: str, event: RoomMessage) -> Message:
    """Build a Message from a Matrix room message event."""
    content = event.source.get("content", {})
    content_type = content.get(CONTENT_TYPE_KEY)
    if content_type is None:
        msgtype = content.get("msgtype", "m.text")
        content_type = CONTENT_TYPE_TEXT if msgtype == "m.text" else msgtype
    payload = content.get(PAYLOAD_KEY, content.get("body"))
    return Message(
        message_id=event.event_id,
        conversation_id=room_id,
        sender_inbox_id=normalize_inbox_id(event.sender),
        content_type=content_type,
        payload=payload,
        sent_at_sequence=int(event.server_timestamp),
    )


class MatrixTransport:
    """
    TransportClient over the Matrix client-server API.

    One instance owns one nio AsyncClient, i.e. one device session.
    """

    def __init__(self, config: MatrixConfig, client: Optional[AsyncClient] = None):
        """
        Initialize the Matrix transport.

        Args:
            config: Matrix configuration settings
            client: Preconfigured nio client (built from config when omitted)
        """
        self.config = config
        if client is None:
            store_path = ""
            if config.store_path is not None:
                config.store_path.mkdir(parents=True, exist_ok=True)
                store_path = str(config.store_path)
            client = AsyncClient(
                homeserver=config.homeserver_url,
                user=config.user_id,
                device_id=config.device_id or None,
                store_path=store_path,
                config=AsyncClientConfig(max_limit_exceeded=0, max_timeouts=0),
            )
        self.client = client
        self._stream_token: Optional[SyncCursor] = None
        logger.info(f"Matrix transport initialized for {config.homeserver_url}")

    @property
    def user_id(self) -> str:
        return self.client.user_id

    # Error normalization

    async def _call(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        conversation_id: Optional[ConversationId] = None,
        mutation: bool = False,
    ) -> Any:
        details = {"conversation_id": conversation_id, "operation": operation}
        try:
            response = await call()
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            raise TransportUnavailable(
                ErrorCode.E201_CONNECTION_FAILED,
                f"{operation} failed: {e}",
                {**details, "cause": describe_error(e)},
            ) from e

        if isinstance(response, ErrorResponse):
            raise self._translate(response, operation, details, mutation)
        return response

    @staticmethod
    def _translate(
        response: ErrorResponse, operation: str, details: Dict[str, Any], mutation: bool
    ) -> Exception:
        errcode = response.status_code or ""
        details = {**details, "cause": f"{errcode}: {response.message}"}
        if errcode in AUTH_ERRCODES or (errcode == "M_FORBIDDEN" and operation in AUTH_OPERATIONS):
            return AuthenticationRejected(
                ErrorCode.E300_AUTHENTICATION_REJECTED, f"{operation} rejected: {response.message}", details
            )
        if errcode == "M_FORBIDDEN" and mutation:
            return InvalidMutation(
                ErrorCode.E509_REMOTE_REJECTED,
                f"{operation} rejected by homeserver: {response.message}",
                details,
                rule="remote_rejected",
            )
        if errcode == "M_LIMIT_EXCEEDED":
            return TransportUnavailable(ErrorCode.E203_RATE_LIMITED, f"{operation} rate limited", details)
        return TransportUnavailable(
            ErrorCode.E200_TRANSPORT_UNAVAILABLE, f"{operation} failed: {response.message}", details
        )

    # Session

    async def register(self, identity: IdentityProvider) -> InboxId:
        """Authenticate the device session and return the account's user ID."""
        account = await identity.get_identifier()
        if account:
            self.client.user = account
            self.client.user_id = account

        if self.config.access_token:
            self.client.access_token = self.config.access_token
            response = await self._call("whoami", self.client.whoami)
            self.client.user_id = response.user_id
            if getattr(response, "device_id", None):
                self.client.device_id = response.device_id
        else:
            await self._login()

        logger.info(f"Matrix session ready for {self.client.user_id} ({self.client.device_id})")
        return normalize_inbox_id(self.client.user_id)

    async def _login(self) -> LoginResponse:
        if not self.config.password:
            raise AuthenticationRejected(
                ErrorCode.E300_AUTHENTICATION_REJECTED,
                "No Matrix password or access token configured",
                {"operation": "login"},
            )
        response = await self._call(
            "login",
            lambda: self.client.login(password=self.config.password, device_name=self.config.device_name),
        )
        self.config.access_token = response.access_token
        self.config.device_id = response.device_id
        return response

    async def rotate_credentials(self, identity: IdentityProvider) -> None:
        """Replace the session's access token with a fresh login."""
        previous_device = self.client.device_id
        self.config.access_token = ""
        await self._login()
        logger.info(f"Matrix credentials rotated (device {previous_device} -> {self.client.device_id})")

    async def close(self) -> None:
        await self.client.close()

    # Replication

    async def pull(
        self,
        cursor: Optional[SyncCursor],
        consent_states: Optional[Iterable[ConsentState]] = None,
    ) -> PullResult:
        full = cursor is None or consent_states is not None
        response = await self._call(
            "pull", lambda: self.client.sync(timeout=0, since=cursor, full_state=full)
        )
        wanted = set(consent_states) if consent_states is not None else None

        deltas = []
        sections = (
            (response.rooms.join, ConsentState.ALLOWED),
            (response.rooms.invite, ConsentState.UNKNOWN),
            (response.rooms.leave, ConsentState.DENIED),
        )
        for rooms, consent in sections:
            if wanted is not None and consent not in wanted:
                continue
            for room_id, info in rooms.items():
                deltas.append(self._delta(room_id, info, consent, response.next_batch))

        return PullResult(deltas=deltas, cursor=response.next_batch)

    async def fetch_conversation(self, conversation_id: ConversationId) -> Optional[ConversationDelta]:
        room = self.client.rooms.get(conversation_id)
        if room is not None:
            return self._room_delta(room, ConsentState.ALLOWED, version=0)
        room = self.client.invited_rooms.get(conversation_id)
        if room is not None:
            return self._room_delta(room, ConsentState.UNKNOWN, version=0)
        return None

    def _delta(self, room_id: str, info: Any, consent: ConsentState, cursor: SyncCursor) -> ConversationDelta:
        events = list(getattr(info, "state", None) or [])
        timeline = getattr(info, "timeline", None)
        if timeline is not None:
            events.extend(timeline.events)
        else:
            events.extend(getattr(info, "invite_state", None) or [])

        version = max((getattr(e, "server_timestamp", 0) or 0 for e in events), default=0)
        room = self.client.rooms.get(room_id) or self.client.invited_rooms.get(room_id)
        if room is not None:
            delta = self._room_delta(room, consent, version)
        else:
            delta = ConversationDelta(
                conversation_id=room_id,
                kind=ConversationKind.GROUP,
                version=version,
                consent_state=consent,
            )
        delta.cursor = cursor
        delta.messages = [
            decode_event(room_id, event) for event in events if isinstance(event, RoomMessage)
        ]
        return delta

    def _room_delta(self, room: NioRoom, consent: ConsentState, version: int) -> ConversationDelta:
        user_ids = list(room.users) + [u for u in room.invited_users if u not in room.users]
        direct = len(user_ids) == 2 and not room.name
        if direct:
            own = normalize_inbox_id(self.client.user_id or "")
            peers = [u for u in user_ids if normalize_inbox_id(u) != own]
            return ConversationDelta(
                conversation_id=room.room_id,
                kind=ConversationKind.DIRECT,
                version=version,
                consent_state=consent,
                peer_inbox_id=peers[0] if peers else None,
            )

        return ConversationDelta(
            conversation_id=room.room_id,
            kind=ConversationKind.GROUP,
            version=version,
            consent_state=consent,
            name=room.name or "",
            description=room.topic or "",
            image_url=room.room_avatar_url or "",
            members={
                normalize_inbox_id(u): role_for_level(room.power_levels.get_user_level(u))
                for u in user_ids
            },
        )

    # Messaging

    async def push(self, conversation_id: ConversationId, payload: object, content_type: str) -> MessageId:
        response = await self._call(
            "push",
            lambda: self.client.room_send(
                room_id=conversation_id,
                message_type="m.room.message",
                content=encode_content(payload, content_type),
            ),
            conversation_id,
        )
        return response.event_id

    async def open_stream(
        self, resume_from: Optional[Dict[ConversationId, int]] = None
    ) -> AsyncIterator[Message]:
        """Long-poll sync as a message stream over every joined room."""
        resume_from = resume_from or {}
        since = self._stream_token or self.client.next_batch
        while True:
            response = await self._call(
                "stream",
                lambda: self.client.sync(timeout=self.config.sync_timeout, since=since, full_state=False),
            )
            for room_id, info in response.rooms.join.items():
                for event in info.timeline.events:
                    if not isinstance(event, RoomMessage):
                        continue
                    message = decode_event(room_id, event)
                    # Events at the resume sequence are redelivered; the router drops the seen ones
                    if message.sent_at_sequence < resume_from.get(room_id, -1):
                        continue
                    yield message
            since = response.next_batch
            self._stream_token = since

    # Conversations

    async def create_dm(self, inbox_id: InboxId) -> ConversationId:
        target = normalize_inbox_id(inbox_id)
        for room in self.client.rooms.values():
            members = {normalize_inbox_id(u) for u in list(room.users) + list(room.invited_users)}
            if not room.name and len(members) == 2 and target in members:
                return room.room_id

        response = await self._call(
            "create_dm",
            lambda: self.client.room_create(
                is_direct=True, invite=[inbox_id], preset=RoomPreset.trusted_private_chat
            ),
        )
        logger.info(f"Created direct room {response.room_id} with {inbox_id}")
        return response.room_id

    async def create_group(
        self,
        name: str,
        members: List[InboxId],
        description: str,
        image_url: str,
        policy: PermissionPolicySet,
    ) -> ConversationId:
        initial_state = []
        if image_url:
            initial_state.append({"type": "m.room.avatar", "state_key": "", "content": {"url": image_url}})
        response = await self._call(
            "create_group",
            lambda: self.client.room_create(
                name=name or None,
                topic=description or None,
                invite=list(members),
                preset=RoomPreset.private_chat,
                initial_state=initial_state,
                power_level_override=power_level_override(self.client.user_id, policy),
            ),
            mutation=True,
        )
        logger.info(f"Created group room {response.room_id} ({name})")
        return response.room_id

    async def add_members(self, conversation_id: ConversationId, inbox_ids: List[InboxId]) -> None:
        for inbox_id in inbox_ids:
            await self._call(
                "add_members",
                lambda inbox_id=inbox_id: self.client.room_invite(conversation_id, inbox_id),
                conversation_id,
                mutation=True,
            )

    def _user_id(self, conversation_id: ConversationId, inbox_id: InboxId) -> str:
        """The member's Matrix user ID as the room spells it (inbox IDs are lowercased)."""
        room = self.client.rooms.get(conversation_id)
        if room is not None:
            for user_id in list(room.users) + list(room.invited_users):
                if same_inbox(user_id, inbox_id):
                    return user_id
        return inbox_id

    async def remove_members(self, conversation_id: ConversationId, inbox_ids: List[InboxId]) -> None:
        for inbox_id in inbox_ids:
            user_id = self._user_id(conversation_id, inbox_id)
            await self._call(
                "remove_members",
                lambda user_id=user_id: self.client.room_kick(conversation_id, user_id),
                conversation_id,
                mutation=True,
            )

    async def set_role(self, conversation_id: ConversationId, inbox_id: InboxId, role: Role) -> None:
        current = await self._call(
            "set_role",
            lambda: self.client.room_get_state_event(conversation_id, "m.room.power_levels"),
            conversation_id,
            mutation=True,
        )
        content = dict(current.content)
        users = {
            user_id: level
            for user_id, level in content.get("users", {}).items()
            if not same_inbox(user_id, inbox_id)
        }
        level = ROLE_LEVELS[role]
        if level != MATRIX_POWER_MEMBER:
            users[self._user_id(conversation_id, inbox_id)] = level
        content["users"] = users
        await self._call(
            "set_role",
            lambda: self.client.room_put_state(conversation_id, "m.room.power_levels", content),
            conversation_id,
            mutation=True,
        )

    async def update_metadata(self, conversation_id: ConversationId, field: str, value: str) -> None:
        event_type, key = METADATA_EVENTS[field]
        await self._call(
            f"update_{field}",
            lambda: self.client.room_put_state(conversation_id, event_type, {key: value}),
            conversation_id,
            mutation=True,
        )

    async def set_consent(self, conversation_id: ConversationId, state: ConsentState) -> None:
        if state is ConsentState.ALLOWED:
            await self._call("set_consent", lambda: self.client.join(conversation_id), conversation_id)
        elif state is ConsentState.DENIED:
            await self._call("set_consent", lambda: self.client.room_leave(conversation_id), conversation_id)

    # Installations

    async def inbox_state(self) -> InboxState:
        response = await self._call("inbox_state", self.client.devices)
        return InboxState(
            inbox_id=normalize_inbox_id(self.client.user_id),
            installations=[device.id for device in response.devices],
            account_identities=[self.client.user_id],
        )

    async def revoke_installations(self, installation_ids: List[InstallationId]) -> None:
        ids = [i for i in installation_ids if i != self.client.device_id]
        if not ids:
            return
        response = await self._call("revoke_installations", lambda: self.client.delete_devices(ids))
        if isinstance(response, DeleteDevicesAuthResponse):
            # Interactive auth: repeat with the account password
            auth = {
                "type": "m.login.password",
                "identifier": {"type": "m.id.user", "user": self.client.user_id},
                "password": self.config.password,
                "session": response.session,
            }
            await self._call("revoke_installations", lambda: self.client.delete_devices(ids, auth=auth))
        logger.info(f"Deleted Matrix devices: {', '.join(ids)}")
