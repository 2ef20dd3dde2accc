"""Shell commands issued against the target host's docker daemon."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from ..descriptor.models import DeploymentDescriptor, ImageReference

LABEL_SERVICE = "dockship.service"
LABEL_IMAGE = "dockship.image"

# docker image inspect 输出: "<repo digests>|<image id>"
_DIGEST_FORMAT = '{{join .RepoDigests " "}}|{{.Id}}'


@dataclass
class DockerCommands:
    """Builds quoted docker invocations. Nothing here runs anything."""

    docker_binary: str = "docker"

    def _docker(self, *args: str, keep_env: Iterable[str] = ()) -> str:
        binary = self.docker_binary
        names = sorted(keep_env)
        parts = shlex.split(binary)
        if names and parts[:1] == ["sudo"]:
            # sudo 默认 env_reset，会丢掉 sh -s 导出的变量
            parts.insert(1, "--preserve-env=" + ",".join(names))
            binary = " ".join(shlex.quote(p) for p in parts)
        return " ".join([binary, *(shlex.quote(a) for a in args)])

    def pull(self, image: ImageReference) -> str:
        return self._docker("pull", str(image))

    def inspect_digest(self, image: ImageReference) -> str:
        return self._docker("image", "inspect", "--format", _DIGEST_FORMAT, str(image))

    def remove(self, container: str) -> str:
        # 只删除容器，不带 -v，命名卷保留
        inspect = self._docker("container", "inspect", container)
        return f"if {inspect} >/dev/null 2>&1; then {self._docker('rm', '-f', container)}; fi"

    def run(
        self,
        descriptor: DeploymentDescriptor,
        image_ref: str,
        env_names: Iterable[str],
    ) -> str:
        args = [
            "run",
            "--detach",
            "--name",
            descriptor.container_name,
            "--restart",
            descriptor.restart_policy,
            "--label",
            f"{LABEL_SERVICE}={descriptor.service}",
            "--label",
            f"{LABEL_IMAGE}={image_ref}",
        ]
        for port in descriptor.ports:
            args += ["--publish", port]
        for volume in descriptor.volumes:
            args += ["--volume", volume]
        if descriptor.network:
            args += ["--network", descriptor.network]
        # 只传变量名，值来自执行 shell 的环境
        env_names = sorted(env_names)
        for name in env_names:
            args += ["--env", name]
        args.append(image_ref)
        return self._docker(*args, keep_env=env_names)

    def recreate(
        self,
        descriptor: DeploymentDescriptor,
        image_ref: str,
        env_names: Iterable[str],
    ) -> str:
        return f"{self.remove(descriptor.container_name)} && {self.run(descriptor, image_ref, env_names)}"

    def exec(self, container: str, command: str) -> str:
        return self._docker("exec", container, "sh", "-c", command)

    def logs(self, container: str, tail: int = 20) -> str:
        return self._docker("logs", "--tail", str(tail), container)


def parse_digest_output(image: ImageReference, output: str) -> Tuple[str, str]:
    """Return ``(pinned_reference, digest)`` from inspect_digest output.

    Prefers the registry digest for the image's own repository; images that
    were never pushed fall back to their local image ID.
    """
    repo_digests, _, image_id = output.strip().rpartition("|")
    candidates = [d for d in repo_digests.split() if "@" in d]
    chosen: Optional[str] = None
    for candidate in candidates:
        name, _, _ = candidate.partition("@")
        if name == image.name or name.endswith("/" + image.repository):
            chosen = candidate
            break
    if chosen is None and candidates:
        chosen = candidates[0]
    if chosen is not None:
        digest = chosen.partition("@")[2]
        return image.with_digest(digest).pinned(), digest
    image_id = image_id.strip()
    if not image_id:
        return str(image), ""
    return image_id, image_id
