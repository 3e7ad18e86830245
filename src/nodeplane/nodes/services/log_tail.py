"""
文件功能：
    节点日志流式读取。

公开接口：
    - DockerLogDeframer / deframe: 拆解 Docker 多路复用日志流的 8 字节帧头
    - LineSplitter: 增量 UTF-8 解码并按行切分（非法字节替换为 U+FFFD）
    - FileLogSource: 通过 tail（Windows 上为 PowerShell Get-Content）读取日志文件
    - DockerLogSource: 通过 Docker Engine API 读取容器日志
    - LogTail: 有界队列 + 生产者任务，支持 async for / async with / cancel()

内部方法：
    - LogTail._produce: 将日志源逐行放入队列，队列满时阻塞而不是丢弃
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import platform
import struct
from pathlib import Path
from typing import AsyncIterator, Iterable, List, Protocol

import httpx
from loguru import logger

from ...errors import NotFoundError

_HEADER = struct.Struct(">BxxxL")


class DockerLogDeframer:
    """
    每帧：1 字节流类型、3 字节填充、4 字节大端长度，随后是负载。帧可能跨越任意块边界。

    N 个完整帧恰好产出 N 个负载，空帧产出 b""，由 LineSplitter 忽略。
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, data: bytes) -> List[bytes]:
        self._buf.extend(data)
        payloads: List[bytes] = []
        while len(self._buf) >= _HEADER.size:
            _stream, size = _HEADER.unpack_from(self._buf)
            end = _HEADER.size + size
            if len(self._buf) < end:
                break
            payloads.append(bytes(self._buf[_HEADER.size:end]))
            del self._buf[:end]
        return payloads


def deframe(chunks: Iterable[bytes]) -> List[bytes]:
    deframer = DockerLogDeframer()
    out: List[bytes] = []
    for chunk in chunks:
        out.extend(deframer.feed(chunk))
    return out


class LineSplitter:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> List[str]:
        self._pending += self._decoder.decode(data)
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> str | None:
        rest = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return rest.rstrip("\r") if rest else None


class LogSource(Protocol):
    def lines(self, tail: int, follow: bool) -> AsyncIterator[str]:
        ...


class FileLogSource:
    def __init__(self, path: Path, system: str | None = None) -> None:
        self.path = Path(path)
        self._system = system or platform.system()

    def command(self, tail: int, follow: bool) -> List[str]:
        if self._system == "Windows":
            cmd = [
                "powershell",
                "-NoProfile",
                "-Command",
                "Get-Content",
                "-Encoding",
                "UTF8",
                "-Path",
                str(self.path),
                "-Tail",
                str(tail),
            ]
            if follow:
                cmd.append("-Wait")
            return cmd
        cmd = ["tail", "-n", str(tail)]
        if follow:
            cmd.append("-f")
        cmd.append(str(self.path))
        return cmd

    async def lines(self, tail: int, follow: bool) -> AsyncIterator[str]:
        if not self.path.exists():
            raise NotFoundError(f"日志文件不存在: {self.path}", operation="tail-logs")
        proc = await asyncio.create_subprocess_exec(
            *self.command(tail, follow),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        splitter = LineSplitter()
        try:
            while True:
                chunk = await proc.stdout.read(4096)
                if not chunk:
                    break
                for line in splitter.feed(chunk):
                    yield line
            rest = splitter.flush()
            if rest is not None:
                yield rest
            await proc.wait()
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()


class DockerLogSource:
    def __init__(
        self,
        docker_host: str,
        container: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.container = container
        if transport is not None:
            self._transport, self._base_url = transport, "http://docker"
        elif docker_host.startswith("unix://"):
            self._transport = httpx.AsyncHTTPTransport(uds=docker_host[len("unix://"):])
            self._base_url = "http://docker"
        else:
            self._transport = None
            self._base_url = docker_host.replace("tcp://", "http://", 1)

    async def lines(self, tail: int, follow: bool) -> AsyncIterator[str]:
        params = {"stdout": 1, "stderr": 1, "follow": int(follow), "tail": str(tail)}
        deframer = DockerLogDeframer()
        splitter = LineSplitter()
        async with httpx.AsyncClient(transport=self._transport, base_url=self._base_url, timeout=None) as client:
            async with client.stream("GET", f"/containers/{self.container}/logs", params=params) as resp:
                if resp.status_code == 404:
                    raise NotFoundError(f"容器不存在: {self.container}", operation="tail-logs")
                resp.raise_for_status()
                async for chunk in resp.aiter_bytes():
                    for payload in deframer.feed(chunk):
                        for line in splitter.feed(payload):
                            yield line
        rest = splitter.flush()
        if rest is not None:
            yield rest


_CLOSED = object()


class LogTail:
    """
    日志流句柄。

    生产者任务把日志源逐行放入有界队列；消费者通过 async for 读取。
    日志源自然结束（follow=False）或调用 cancel() 后流即关闭，此后不再产出任何行。
    日志源抛出的异常会在消费者读到末尾时重新抛出。
    """

    def __init__(self, source: LogSource, tail: int = 100, follow: bool = False, maxsize: int = 100) -> None:
        self._source = source
        self._tail = tail
        self._follow = follow
        self._maxsize = maxsize
        self._queue: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None
        self._error: BaseException | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._task is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
            self._task = asyncio.create_task(self._produce())

    async def _produce(self) -> None:
        try:
            async with contextlib.aclosing(self._source.lines(self._tail, self._follow)) as lines:
                async for line in lines:
                    await self._queue.put(line)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"读取日志失败：{e}")
            self._error = e
        await self._queue.put(_CLOSED)

    def __aiter__(self) -> "LogTail":
        self.start()
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            if self._error is not None:
                raise self._error
            raise StopAsyncIteration
        return item

    async def cancel(self) -> None:
        """停止生产者并关闭流；重复调用无副作用。"""
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> "LogTail":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()
