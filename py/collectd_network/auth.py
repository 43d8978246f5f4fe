"""署名の検証と暗号化パケットの復号に使うパスワード参照。"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Mapping, Protocol

LOGGER = logging.getLogger(__name__)


class PasswordLookup(Protocol):
    def password(self, user: str) -> str:
        """``user`` のパスワードを返す。未知のユーザーなら ``KeyError``。"""
        ...


class StaticPasswords:
    """メモリ上に持つ認証情報。"""

    def __init__(self, passwords: Mapping[str, str]) -> None:
        self._passwords = dict(passwords)

    def password(self, user: str) -> str:
        return self._passwords[user]


class AuthFile:
    """collectd の AuthFile 形式 (``user: password``) を読むルックアップ。

    ファイルの mtime が変わった場合は次の問い合わせ時に読み直す。
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._mtime: int | None = None
        self._passwords: dict[str, str] = {}

    def password(self, user: str) -> str:
        with self._lock:
            self._reload_if_changed()
            return self._passwords[user]

    def _reload_if_changed(self) -> None:
        mtime = os.stat(self.path).st_mtime_ns
        if mtime == self._mtime:
            return
        self._passwords = parse_auth_file(self.path.read_text(encoding="utf-8"))
        self._mtime = mtime
        LOGGER.debug("loaded %d users from %s", len(self._passwords), self.path)


def parse_auth_file(text: str) -> dict[str, str]:
    passwords: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        user, sep, password = line.partition(":")
        user = user.strip()
        password = password.strip()
        if not sep or not user or not password:
            LOGGER.warning("ignoring malformed auth file line %d", lineno)
            continue
        passwords[user] = password
    return passwords
