"""Media Recovery Engine - turn a MediaRef into readable bytes.

Strategy ladder, fixed order, first success wins:

  0. cache            - live MediaCache entry for (instance_id, message_id)
  1. inline           - decode MediaRef.inline_base64 (no network)
  2. prepare_fetch    - provider stages the media, then fetch by media id
  3. direct_download  - provider decrypts url + mediaKey server-side
  4. list_match       - list chat media by type, match the message id, fetch

A strategy that does not apply (no inline bytes, no url/key, no chat id,
no provider client) is skipped without a remote call. Every strategy
runs inside the Backoff Controller, inline with a single attempt;
permanent provider errors move straight to the next rung. A success is
cached before returning.

Security: media keys, URLs and chat ids are NEVER logged.
"""

from __future__ import annotations

import base64
import binascii
import os
import threading
from dataclasses import dataclass
from typing import Callable

from chatdesk.errors import OperationCancelled, RecoveryError
from chatdesk.infra.backoff import BackoffController, BackoffPolicy
from chatdesk.observability.logging import get_logger, message_id_prefix
from chatdesk.observability.redaction import safe_log_context
from chatdesk.whatsapp.models import MediaRef

from .cache import MediaCache
from .handles import InlineHandle, MediaHandle, TempFileHandle
from .provider import FetchedMedia, ProviderError, ProviderMediaApi, ProviderUnavailable

logger = get_logger(__name__)

STRATEGY_CACHE = "cache"
STRATEGY_INLINE = "inline"
STRATEGY_PREPARE_FETCH = "prepare_fetch"
STRATEGY_DIRECT_DOWNLOAD = "direct_download"
STRATEGY_LIST_MATCH = "list_match"

UNAVAILABLE = "unavailable"

# Resolved media up to this size is kept in memory, larger goes to a temp file
INLINE_HANDLE_MAX_BYTES = 256 * 1024

DEFAULT_MEDIA_POLICY = BackoffPolicy(
    max_attempts=int(os.environ.get("MEDIA_RETRY_MAX_ATTEMPTS", "3")),
    initial_delay=float(os.environ.get("MEDIA_RETRY_INITIAL_DELAY", "0.5")),
    max_delay=float(os.environ.get("MEDIA_RETRY_MAX_DELAY", "4.0")),
    retry_on=(ProviderUnavailable,),
)

# Inline decoding is local; a failure is final for that rung
INLINE_POLICY = BackoffPolicy(max_attempts=1, initial_delay=0.0, retry_on=())

HandleFactory = Callable[[bytes, str], MediaHandle]


def default_handle_factory(data: bytes, mime_type: str) -> MediaHandle:
    if len(data) <= INLINE_HANDLE_MAX_BYTES:
        return InlineHandle(data, mime_type)
    return TempFileHandle(data, mime_type)


@dataclass(frozen=True)
class ResolvedMedia:
    """Outcome of a resolution. `available=False` only from resolve_or_placeholder."""

    url: str | None
    mime_type: str
    strategy: str
    handle: MediaHandle | None = None
    from_cache: bool = False
    available: bool = True
    error: str | None = None

    def read(self) -> bytes:
        if self.handle is None:
            raise RuntimeError("media unavailable")
        return self.handle.read()


def _live_url(handle: MediaHandle) -> str | None:
    if handle.released:
        return None
    try:
        return handle.url
    except RuntimeError:
        # Released between the check and the read
        return None


def decode_inline(value: str) -> bytes:
    """Decode inline base64, accepting a data: URL prefix."""
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    return base64.b64decode(value, validate=False)


class MediaRecoveryEngine:
    """Resolves media through the strategy ladder.

    Args:
        api: Provider media client (None disables remote strategies).
        cache: TTL cache shared by all resolutions.
        controller: Backoff controller for remote strategies.
        policy: Retry policy applied to each remote strategy.
        handle_factory: Wraps resolved bytes in a releasable handle.
    """

    def __init__(
        self,
        api: ProviderMediaApi | None,
        cache: MediaCache | None = None,
        *,
        controller: BackoffController | None = None,
        policy: BackoffPolicy = DEFAULT_MEDIA_POLICY,
        handle_factory: HandleFactory = default_handle_factory,
    ) -> None:
        self._api = api
        self._cache = cache if cache is not None else MediaCache()
        self._controller = controller or BackoffController()
        self._policy = policy
        self._handle_factory = handle_factory

    @property
    def cache(self) -> MediaCache:
        return self._cache

    def resolve(
        self,
        instance_id: str,
        message_id: str,
        media_ref: MediaRef,
        content_type: str | None = None,
        *,
        chat_id: str | None = None,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> ResolvedMedia:
        """Resolve media bytes for one message.

        Args:
            instance_id: Instance owning the message.
            message_id: Provider message id.
            media_ref: Reference extracted at normalization time.
            content_type: image / video / audio / document / sticker
                          (defaults to media_ref.content_type).
            chat_id: Remote JID of the chat (enables list_match).
            cancel: Event that aborts the ladder when set.
            deadline: Absolute monotonic deadline for the whole ladder.

        Returns:
            ResolvedMedia with a loadable URL.

        Raises:
            RecoveryError: Every applicable strategy failed, or the call was
                           cancelled. Carries the last underlying cause.
        """
        key = (instance_id, message_id)
        content_type = content_type or media_ref.content_type
        log_ctx = {"message_id": message_id_prefix(message_id), "content_type": content_type}

        entry = self._cache.get(key)
        if entry is not None:
            url = _live_url(entry.handle)
            if url is not None:
                return ResolvedMedia(
                    url=url,
                    mime_type=entry.mime_type,
                    strategy=entry.strategy,
                    handle=entry.handle,
                    from_cache=True,
                )
            logger.info(
                "cached media handle already released",
                extra={"extra_fields": safe_log_context(**log_ctx, strategy=entry.strategy)},
            )
            self._cache.purge(key)

        ladder: list[tuple[str, Callable[[], FetchedMedia] | None]] = [
            (STRATEGY_INLINE, self._inline(media_ref)),
            (STRATEGY_PREPARE_FETCH, self._prepare_fetch(instance_id, message_id, media_ref.mime_type)),
            (STRATEGY_DIRECT_DOWNLOAD, self._direct_download(instance_id, media_ref, content_type)),
            (
                STRATEGY_LIST_MATCH,
                self._list_match(instance_id, message_id, media_ref, content_type, chat_id),
            ),
        ]

        attempted: list[str] = []
        last_error: BaseException | None = None

        for name, operation in ladder:
            if operation is None:
                continue
            if cancel is not None and cancel.is_set():
                last_error = OperationCancelled("media recovery cancelled")
                break

            attempted.append(name)
            try:
                fetched = self._controller.run(
                    operation,
                    INLINE_POLICY if name == STRATEGY_INLINE else self._policy,
                    deadline=deadline,
                    cancel=cancel,
                    label=f"media:{name}",
                )
            except OperationCancelled as e:
                last_error = e
                break
            except (ProviderError, ValueError, binascii.Error) as e:
                last_error = e
                logger.warning(
                    "media strategy failed",
                    extra={
                        "extra_fields": safe_log_context(
                            **log_ctx, strategy=name, error_type=type(e).__name__
                        )
                    },
                )
                continue

            handle = self._handle_factory(fetched.data, fetched.mime_type)
            self._cache.put(key, handle, name, fetched.mime_type)
            logger.info(
                "media resolved",
                extra={
                    "extra_fields": safe_log_context(
                        **log_ctx, strategy=name, size=len(fetched.data)
                    )
                },
            )
            return ResolvedMedia(
                url=handle.url,
                mime_type=fetched.mime_type,
                strategy=name,
                handle=handle,
            )

        logger.warning(
            "media unavailable",
            extra={
                "extra_fields": safe_log_context(
                    **log_ctx,
                    attempted=",".join(attempted),
                    error_type=type(last_error).__name__ if last_error else None,
                )
            },
        )
        raise RecoveryError(instance_id, message_id, last_error, attempted)

    def resolve_or_placeholder(
        self,
        instance_id: str,
        message_id: str,
        media_ref: MediaRef,
        content_type: str | None = None,
        **kwargs,
    ) -> ResolvedMedia:
        """resolve(), surfacing failure as an unavailable result."""
        try:
            return self.resolve(instance_id, message_id, media_ref, content_type, **kwargs)
        except RecoveryError as e:
            return ResolvedMedia(
                url=None,
                mime_type=media_ref.mime_type,
                strategy=UNAVAILABLE,
                available=False,
                error=str(e),
            )

    def _inline(self, ref: MediaRef) -> Callable[[], FetchedMedia] | None:
        if not ref.inline_base64:
            return None
        encoded = ref.inline_base64

        def op() -> FetchedMedia:
            data = decode_inline(encoded)
            if not data:
                raise ValueError("inline media is empty")
            return FetchedMedia(data=data, mime_type=ref.mime_type)

        return op

    def _prepare_fetch(
        self, instance_id: str, message_id: str, mime_type: str
    ) -> Callable[[], FetchedMedia] | None:
        api = self._api
        if api is None:
            return None

        def op() -> FetchedMedia:
            media_id = api.prepare(instance_id, message_id)
            return api.fetch_by_handle(instance_id, media_id, mime_type)

        return op

    def _direct_download(
        self, instance_id: str, ref: MediaRef, content_type: str
    ) -> Callable[[], FetchedMedia] | None:
        api = self._api
        if api is None or not ref.has_encrypted_pointer:
            return None
        return lambda: api.direct_decrypt_download(instance_id, ref, content_type)

    def _list_match(
        self,
        instance_id: str,
        message_id: str,
        ref: MediaRef,
        content_type: str,
        chat_id: str | None,
    ) -> Callable[[], FetchedMedia] | None:
        api = self._api
        if api is None or not chat_id:
            return None

        def op() -> FetchedMedia:
            entries = api.list_media(instance_id, content_type, chat_id)
            for item in entries:
                embedded = (item.get("Message") or {}).get("messageId")
                if embedded == message_id and item.get("mediaId"):
                    return api.fetch_by_handle(instance_id, str(item["mediaId"]), ref.mime_type)
            raise ProviderError("message not found in media listing")

        return op
