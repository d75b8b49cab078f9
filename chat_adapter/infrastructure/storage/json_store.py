import asyncio
import json
import os
from pathlib import Path
from typing import Iterator, List, Optional
from uuid import uuid4

from chat_adapter.config.settings import settings
from chat_adapter.domain.conversation import ConversationStore, Conversation, ConversationMetadata
from chat_adapter.domain.exceptions import NotFoundError, StorageError
from chat_adapter.infrastructure.logging.logger import logger


def parse_conversation_id(stem: str) -> Optional[int]:
    """文件名必须是不带前导零的十进制非负整数，否则不是会话文件。"""

    if not stem.isdigit() or not stem.isascii():
        return None
    if len(stem) > 1 and stem.startswith("0"):
        return None
    return int(stem)


class JsonConversationStore(ConversationStore):
    """一个会话一个 JSON 文件：<root>/<id>.json。

    所有阻塞 I/O 都通过 asyncio.to_thread 执行，不阻塞事件循环。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.conversation_dir).resolve()
        self._alloc_lock = asyncio.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, conversation_id: str) -> Path:
        return self._root / f"{conversation_id}.json"

    async def allocate_next_id(self) -> str:
        """分配下一个顺序 ID，并通过独占创建文件的方式占位。

        占位文件在 write() 时被整体覆盖；创建失败时调用 release_id() 回收。
        """

        async with self._alloc_lock:
            try:
                return await asyncio.to_thread(self._reserve_next_id)
            except OSError as e:
                raise StorageError(f"Failed to get next conversation ID: {e}", code="STORE_ALLOC_ERROR")

    async def release_id(self, conversation_id: str) -> None:
        try:
            await asyncio.to_thread(self.path_for(conversation_id).unlink, True)
        except OSError as e:
            raise StorageError(f"Failed to release conversation ID: {e}", code="STORE_DELETE_ERROR")

    async def write(self, conversation: Conversation) -> None:
        try:
            await asyncio.to_thread(self._write_file, conversation)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write conversation: {e}", code="STORE_WRITE_ERROR")

    async def read(self, conversation_id: str) -> Conversation:
        if parse_conversation_id(conversation_id) is None:
            raise NotFoundError(conversation_id)
        try:
            return await asyncio.to_thread(self._read_file, self.path_for(conversation_id))
        except FileNotFoundError:
            raise NotFoundError(conversation_id)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # 文件存在但内容损坏，按不存在处理
            logger.warning(
                f"Malformed conversation file {conversation_id}: {e}",
                extra={"extra": {"conversation_id": conversation_id}},
            )
            raise NotFoundError(conversation_id, reason=str(e))
        except OSError as e:
            raise StorageError(f"Failed to read conversation: {e}", code="STORE_READ_ERROR")

    async def list(self) -> List[ConversationMetadata]:
        try:
            paths = await asyncio.to_thread(lambda: [p for _, p in self._iter_conversation_files()])
        except OSError as e:
            raise StorageError(f"Failed to list conversations: {e}", code="STORE_LIST_ERROR")

        items: List[ConversationMetadata] = []
        for path in paths:
            try:
                conv = await asyncio.to_thread(self._read_file, path)
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(
                    f"Error reading conversation file {path.name}: {e}",
                    extra={"extra": {"file": path.name}},
                )
                continue
            items.append(ConversationMetadata.from_conversation(conv))
        items.sort(key=lambda m: m.updated_at, reverse=True)
        return items

    async def count(self) -> int:
        try:
            return await asyncio.to_thread(lambda: sum(1 for _ in self._iter_conversation_files()))
        except OSError as e:
            raise StorageError(f"Failed to count conversations: {e}", code="STORE_LIST_ERROR")

    async def delete(self, conversation_id: str) -> bool:
        if parse_conversation_id(conversation_id) is None:
            return False
        try:
            await asyncio.to_thread(self.path_for(conversation_id).unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete conversation: {e}", code="STORE_DELETE_ERROR")
        return True

    def _iter_conversation_files(self) -> Iterator[tuple[int, Path]]:
        if not self._root.exists():
            return
        for path in self._root.glob("*.json"):
            num = parse_conversation_id(path.stem)
            if num is not None and path.is_file():
                yield num, path

    def _reserve_next_id(self) -> str:
        self._root.mkdir(parents=True, exist_ok=True)
        highest = max((num for num, _ in self._iter_conversation_files()), default=0)
        candidate = highest + 1
        while True:
            try:
                with open(self.path_for(str(candidate)), "x", encoding="utf-8"):
                    pass
                return str(candidate)
            except FileExistsError:
                # 其他进程/实例抢先占用了该 ID
                candidate += 1

    def _write_file(self, conversation: Conversation) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        path = self.path_for(conversation.id)
        tmp_path = self._root / f".{conversation.id}.{uuid4().hex}.json.tmp"
        data = json.dumps(conversation.to_dict(), ensure_ascii=False, indent=2)
        try:
            tmp_path.write_text(data, encoding="utf-8")
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    @staticmethod
    def _read_file(path: Path) -> Conversation:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("conversation file is not a JSON object")
        conv = Conversation.from_dict(data)
        if conv.id != path.stem:
            raise ValueError(f"conversation id {conv.id!r} does not match file name")
        return conv
