"""
IMAP mailbox client.

Only what the email channel needs: log in, select a folder, fetch messages
newer than a UID cursor (or all unseen messages when there is no cursor)
and log out.
"""

import imaplib
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)


class MailboxError(Exception):
    """Mailbox connection, login or protocol failure."""

    pass


@dataclass
class MailboxMessage:
    """A fetched message with its IMAP UID."""

    uid: int
    raw: bytes


class MailboxClient(Protocol):
    """Mailbox protocol client used by the email channel."""

    def connect(self, username: str, password: str) -> None: ...

    def open_folder(self, name: str) -> None: ...

    def fetch_since(self, cursor: int | None) -> Iterator[MailboxMessage]: ...

    def count_messages(self) -> int: ...

    def logout(self) -> None: ...


class ImapMailboxClient:
    """UID-based IMAP client on top of imaplib."""

    DEFAULT_TIMEOUT = 30

    def __init__(
        self, host: str, port: int = 993, secure: bool = True, timeout: int = DEFAULT_TIMEOUT
    ):
        self.host = host
        self.port = port
        self.secure = secure
        self.timeout = timeout
        self._imap: imaplib.IMAP4 | None = None

    def connect(self, username: str, password: str) -> None:
        """Open the connection and log in."""
        try:
            if self.secure:
                self._imap = imaplib.IMAP4_SSL(self.host, self.port, timeout=self.timeout)
            else:
                self._imap = imaplib.IMAP4(self.host, self.port, timeout=self.timeout)
            self._imap.login(username, password)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Could not connect to {self.host}:{self.port}: {e}") from e
        logger.debug(f"Logged in to {self.host} as {username}")

    def _conn(self) -> imaplib.IMAP4:
        if self._imap is None:
            raise MailboxError("Not connected")
        return self._imap

    def open_folder(self, name: str) -> None:
        """Select a folder read-write (fetching marks messages seen)."""
        try:
            status, data = self._conn().select(_quote_folder(name))
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Could not open folder {name}: {e}") from e
        if status != "OK":
            raise MailboxError(f"Could not open folder {name}: {data}")

    def search_uids(self, cursor: int | None) -> list[int]:
        """UIDs newer than cursor, or unseen UIDs without a cursor, ascending."""
        criteria = f"UID {cursor + 1}:*" if cursor else "UNSEEN"
        try:
            status, data = self._conn().uid("SEARCH", None, criteria)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailboxError(f"Search failed: {e}") from e
        if status != "OK":
            raise MailboxError(f"Search failed: {data}")

        uids = sorted(int(uid) for uid in (data[0] or b"").split())
        # "N:*" always matches the last message, even when its UID is below N
        if cursor:
            uids = [uid for uid in uids if uid > cursor]
        return uids

    def fetch_since(self, cursor: int | None) -> Iterator[MailboxMessage]:
        """Yield messages in UID order."""
        for uid in self.search_uids(cursor):
            try:
                status, data = self._conn().uid("FETCH", str(uid), "(RFC822)")
            except (imaplib.IMAP4.error, OSError) as e:
                raise MailboxError(f"Fetch of UID {uid} failed: {e}") from e
            if status != "OK":
                raise MailboxError(f"Fetch of UID {uid} failed: {data}")
            raw = next(
                (part[1] for part in data if isinstance(part, tuple) and len(part) > 1),
                None,
            )
            if raw is None:
                logger.warning(f"UID {uid} returned no message body")
                continue
            yield MailboxMessage(uid=uid, raw=raw)

    def count_messages(self) -> int:
        """Number of messages in the selected folder."""
        status, data = self._conn().search(None, "ALL")
        if status != "OK":
            raise MailboxError(f"Search failed: {data}")
        return len((data[0] or b"").split())

    def logout(self) -> None:
        if self._imap is None:
            return
        try:
            self._imap.logout()
        finally:
            self._imap = None


def _quote_folder(name: str) -> str:
    if " " in name and not name.startswith('"'):
        return f'"{name}"'
    return name
