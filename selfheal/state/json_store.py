from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from typing import Callable, Generic, Iterator, Type, TypeVar

from pydantic import BaseModel, ValidationError

from selfheal.state.filelock import file_lock

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class JsonStateFile(Generic[M]):
    """
    Shared JSON state file backed by a pydantic model.

    - load():   read without locking; a missing or unreadable file yields `default()`
    - save():   replace the file under the lock
    - mutate(): load + yield + save as one locked read-modify-write
    - ensure(): create the file holding `default()` if it is absent
    """

    def __init__(
        self,
        *,
        path: str,
        model: Type[M],
        default: Callable[[], M] | None = None,
        lock_timeout_s: float = 30.0,
        lock_poll_s: float = 0.1,
    ) -> None:
        self.path = path
        self.model = model
        self.default = default or model
        self.lock_timeout_s = lock_timeout_s
        self.lock_poll_s = lock_poll_s

    def load(self) -> M:
        if not os.path.exists(self.path):
            return self.default()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return self.model.model_validate(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("state file %s unreadable, starting empty: %s", self.path, str(e)[:200])
            return self.default()

    def save(self, data: M) -> None:
        with file_lock(self.path, timeout_s=self.lock_timeout_s, poll_s=self.lock_poll_s):
            self._write(data)

    def ensure(self) -> None:
        if os.path.exists(self.path):
            return
        with file_lock(self.path, timeout_s=self.lock_timeout_s, poll_s=self.lock_poll_s):
            if not os.path.exists(self.path):
                self._write(self.default())

    @contextmanager
    def mutate(self) -> Iterator[M]:
        with file_lock(self.path, timeout_s=self.lock_timeout_s, poll_s=self.lock_poll_s):
            data = self.load()
            yield data
            self._write(data)

    def _write(self, data: M) -> None:
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        payload = json.dumps(data.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False)
        fd, tmp = tempfile.mkstemp(prefix=".selfheal_", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
