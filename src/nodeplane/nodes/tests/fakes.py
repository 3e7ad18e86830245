"""
测试用替身：内存中的 Docker 客户端与 systemctl 记录器。
"""

import itertools
import subprocess

import docker

from src.nodeplane.errors import CommandError


class FakeContainer:
    def __init__(self, client, name, image, created, **kwargs):
        self._client = client
        self.name = name
        self.image = image
        self.kwargs = kwargs
        self.status = "created"
        self.attrs = {"Created": created, "State": {"Status": "created", "StartedAt": "0001-01-01T00:00:00Z"}}
        self.archives = []
        self.signals = []

    def start(self):
        self.status = "running"
        self.attrs["State"] = {"Status": "running", "StartedAt": f"2024-01-01T00:00:{self.attrs['Created']:02d}Z"}

    def remove(self, force=False):
        self._client.removed.append(self.name)
        self._client.containers.items.pop(self.name, None)

    def put_archive(self, path, data):
        self.archives.append((path, data))
        return True

    def kill(self, signal=None):
        self.signals.append(signal)


class FakeContainers:
    def __init__(self, client):
        self._client = client
        self.items = {}
        self._clock = itertools.count(1)

    def list(self, all=False, filters=None):
        name = (filters or {}).get("name", "")
        return [c for n, c in self.items.items() if name in n]

    def create(self, image, name=None, **kwargs):
        if name in self.items:
            raise docker.errors.APIError(f"Conflict: container name {name} already in use")
        container = FakeContainer(self._client, name, image, next(self._clock), **kwargs)
        self.items[name] = container
        return container


class FakeImages:
    def __init__(self, local=()):
        self.local = set(local)
        self.pulled = []

    def get(self, ref):
        if ref not in self.local:
            raise docker.errors.ImageNotFound(f"No such image: {ref}")
        return ref

    def pull(self, repository, tag=None):
        ref = f"{repository}:{tag}"
        self.pulled.append(ref)
        self.local.add(ref)
        return ref


class FakeDockerClient:
    def __init__(self, images=()):
        self.containers = FakeContainers(self)
        self.images = FakeImages(images)
        self.removed = []
        self.reachable = True

    def ping(self):
        if not self.reachable:
            raise docker.errors.DockerException("connection refused")
        return True


class RecordingRunner:
    """记录所有命令；fail 中列出的子命令返回非零退出码。"""

    def __init__(self, fail=(), stdout=None):
        self.calls = []
        self.fail = set(fail)
        self.stdout = stdout or {}

    def __call__(self, args, check=True):
        args = [str(a) for a in args]
        self.calls.append(args)
        sub = args[1] if len(args) > 1 else ""
        code = 1 if sub in self.fail else 0
        if check and code:
            raise CommandError(args, code, "boom")
        return subprocess.CompletedProcess(args, code, self.stdout.get(sub, ""), "")

    def subcommands(self):
        return [c[1] for c in self.calls]
