"""Shared JSON document of issues and threaded comments."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional
from datetime import datetime, timezone
import asyncio
import json
import logging
import os
import tempfile
try:
    import fcntl  # type: ignore
except Exception:  # pragma: no cover - non-POSIX environments
    fcntl = None

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], Awaitable[None]]


class StoreError(Exception):
    """The issues document could not be read, parsed or written."""


class IssueNotFoundError(StoreError):
    def __init__(self, issue_id: int):
        super().__init__(f"issue {issue_id} not found")
        self.issue_id = issue_id


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class IssueStore:
    """Owner of the on-disk document; every mutation is a serialized read-modify-write."""

    def __init__(self, path: Path, locale: str = "pt-BR"):
        self.path = Path(path)
        self.locale = locale
        self._write_lock = asyncio.Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def _read_sync(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"issues": []}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StoreError(f"cannot read {self.path}: {exc}") from exc
        if not raw.strip():
            return {"issues": []}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StoreError(f"cannot parse {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"{self.path} does not hold a JSON object")
        if not isinstance(data.get("issues"), list):
            data["issues"] = []
        return data

    def _write_sync(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(data, indent=2, ensure_ascii=False))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _update_sync(self, updater: Callable[[Dict[str, Any]], Any]) -> tuple[Dict[str, Any], Any]:
        if fcntl is None:
            data = self._read_sync()
            result = updater(data)
            self._write_sync(data)
            return data, result
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock_path().open("a", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                data = self._read_sync()
                result = updater(data)
                self._write_sync(data)
                return data, result
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    async def _locked_update(self, updater: Callable[[Dict[str, Any]], Any]) -> Any:
        async with self._write_lock:
            try:
                data, result = await asyncio.to_thread(self._update_sync, updater)
            except StoreError:
                raise
            except OSError as exc:
                raise StoreError(f"cannot write {self.path}: {exc}") from exc
        await self._notify(data)
        return result

    async def _notify(self, data: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                await listener(data)
            except Exception:
                logger.exception(f"Store listener failed after writing {self.path}")

    async def load(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._read_sync)

    async def get_issue(self, issue_id: int) -> Dict[str, Any] | None:
        data = await self.load()
        return next((issue for issue in data["issues"] if issue.get("id") == issue_id), None)

    async def create_issue(
        self,
        title: str,
        body: str = "",
        labels: Optional[List[str]] = None,
        priority: str = "medium",
        author: str = "auto",
    ) -> Dict[str, Any]:
        def _update(data: Dict[str, Any]) -> Dict[str, Any]:
            ids = [issue.get("id") for issue in data["issues"] if isinstance(issue.get("id"), int)]
            issue = {
                "id": max(ids) + 1 if ids else 1,
                "title": title,
                "author": author,
                "created_at": utc_now(),
                "status": "open",
                "labels": list(labels or []),
                "priority": priority,
                "locale": self.locale,
                "body": body,
                "body_original": body,
                "comments": [],
            }
            data["issues"].append(issue)
            return issue

        issue = await self._locked_update(_update)
        logger.info(f"Created issue #{issue['id']}: {title}")
        return issue

    async def append_comment(
        self,
        issue_id: Optional[int],
        author: str,
        body: str,
        extra: Optional[Dict[str, Any]] = None,
        default_title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append one comment; ``issue_id=None`` targets the main (first) thread."""
        def _update(data: Dict[str, Any]) -> Dict[str, Any]:
            issues = data["issues"]
            if not issues:
                issues.append({
                    "id": issue_id or 1,
                    "title": default_title or "Main Thread",
                    "created_at": utc_now(),
                    "status": "open",
                    "comments": [],
                })
            if issue_id is None:
                target = issues[0]
            else:
                target = next((issue for issue in issues if issue.get("id") == issue_id), None)
                if target is None:
                    raise IssueNotFoundError(issue_id)
            comment = {
                "author": author,
                "created_at": utc_now(),
                "locale": self.locale,
                "body": body,
                "body_original": body,
            }
            if extra:
                comment.update(extra)
            target.setdefault("comments", []).append(comment)
            return comment

        try:
            comment = await self._locked_update(_update)
        except StoreError as exc:
            logger.error(f"Failed to append comment by {author} to issue {issue_id} in {self.path}: {exc}")
            raise
        logger.info(f"Appended comment by {author} to issue {issue_id if issue_id is not None else 'main'}")
        return comment

    async def feed(self) -> Dict[str, Any]:
        """All comments flattened and ordered by creation time."""
        data = await self.load()
        comments: List[Dict[str, Any]] = []
        for issue in data["issues"]:
            for comment in issue.get("comments", []) or []:
                comments.append({**comment, "issue_id": issue.get("id"), "issue_title": issue.get("title")})
        comments.sort(key=lambda item: str(item.get("created_at") or ""))
        return {"comments": comments, "master_comment": data.get("master_comment")}
