"""Container runtime adapter driving the docker or podman CLI.

Every build step runs in a short-lived container started from the current
image with an idle shell, so commands can be executed with ``exec`` and the
result committed. Containers are removed after each step; interrupted execs
kill the client process and force-remove the container.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import time
import warnings
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any

from boxforge.errors import AdapterFailure, BuildCancelled
from boxforge.operations import ArchiveKind
from boxforge.runtime.base import CancelToken, ContainerSpec, ExecResult, ResolvedImage
from boxforge.state import ImageConfig

IDLE_COMMAND = "while sleep 3600; do :; done"
POLL_INTERVAL = 0.2
# docker/podman reserve 125 for failures of the client or daemon itself.
RUNTIME_ERROR_EXIT = 125


@dataclass(slots=True)
class ContainerCliRuntime:
    name: str = "docker"
    binary: str = "docker"

    def resolve(self, name: str) -> ResolvedImage:
        inspected = self._run(["image", "inspect", name], operation="resolve", check=False)
        if inspected.returncode != 0:
            self._run(["pull", name], operation="resolve")
            inspected = self._run(["image", "inspect", name], operation="resolve")
        document = self._parse_inspect(inspected.stdout, name)
        return ResolvedImage(image=str(document["Id"]), config=config_from_inspect(document))

    def inspect(self, image: str) -> ImageConfig:
        inspected = self._run(["image", "inspect", image], operation="inspect")
        return config_from_inspect(self._parse_inspect(inspected.stdout, image))

    def create(self, image: str, spec: ContainerSpec) -> str:
        args = ["run", "-d", "--entrypoint", "/bin/sh"]
        args.extend(_env_args(spec.env))
        args.extend([image, "-c", IDLE_COMMAND])
        result = self._run(args, operation="create")
        container = result.stdout.strip()
        if not container:
            raise AdapterFailure(
                "Runtime did not report a container id.",
                context={"runtime": self.name, "operation": "create", "image": image},
            )
        return container

    def exec(
        self,
        container: str,
        argv: tuple[str, ...],
        spec: ContainerSpec,
        *,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> ExecResult:
        cmd = [self.binary, "exec", "-w", spec.workdir]
        if spec.user:
            cmd.extend(["-u", spec.user])
        cmd.extend(_env_args(spec.env))
        cmd.append(container)
        cmd.extend(argv)

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            raise self._unavailable("exec", exc) from exc

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                output, _ = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                reason = None
                if cancel is not None and cancel.cancelled:
                    reason = cancel.reason or "cancelled"
                elif deadline is not None and time.monotonic() >= deadline:
                    reason = "timeout"
                if reason is not None:
                    proc.kill()
                    proc.communicate()
                    self._run(["rm", "-f", container], operation="remove", check=False)
                    raise BuildCancelled(
                        "Command was interrupted.",
                        context={
                            "runtime": self.name,
                            "operation": "exec",
                            "command": " ".join(argv),
                            "reason": reason,
                        },
                    ) from None

        if proc.returncode == RUNTIME_ERROR_EXIT:
            raise AdapterFailure(
                "Runtime failed to execute command in container.",
                context={
                    "runtime": self.name,
                    "operation": "exec",
                    "container": container,
                    "output": (output or "")[-2000:],
                },
            )
        return ExecResult(exit_code=proc.returncode, output=output or "")

    def copy_in(self, container: str, source: Path, target: str) -> None:
        if not source.exists():
            raise AdapterFailure(
                "Copy source does not exist.",
                context={"runtime": self.name, "operation": "copy_in", "source": str(source)},
            )
        parent = target if source.is_dir() else str(PurePosixPath(target).parent)
        self._run(["exec", container, "mkdir", "-p", parent], operation="copy_in")
        # Copy directory contents into the exact target, not target/<basename>.
        src = f"{source}/." if source.is_dir() else str(source)
        self._run(["cp", src, f"{container}:{target}"], operation="copy_in")

    def diff(self, container: str) -> tuple[str, ...]:
        result = self._run(["diff", container], operation="diff")
        paths: list[str] = []
        for line in result.stdout.splitlines():
            parts = line.split(maxsplit=1)
            if len(parts) == 2:
                paths.append(parts[1])
        return tuple(sorted(paths))

    def commit(self, container: str, config: ImageConfig, *, comment: str = "") -> str:
        args = ["commit"]
        for change in commit_changes(config):
            args.extend(["--change", change])
        if comment:
            args.extend(["-m", comment])
        args.append(container)
        return self._run(args, operation="commit").stdout.strip()

    def remove(self, container: str) -> None:
        self._run(["rm", "-f", container], operation="remove")

    def tag(self, image: str, name: str) -> None:
        self._run(["tag", image, name], operation="tag")

    def export(self, image: str, path: Path, *, kind: ArchiveKind, name: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._run(["tag", image, name], operation="export")
        args = ["save", "-o", str(path)]
        if kind == "oci":
            if self.binary == "podman":
                args.extend(["--format", "oci-archive"])
            else:
                warnings.warn(
                    f"{self.binary} save writes a docker archive; {path.name} will not be OCI layout.",
                    RuntimeWarning,
                    stacklevel=2,
                )
        args.append(name)
        self._run(args, operation="export")

    def flatten(self, image: str, config: ImageConfig) -> str:
        created = self._run(["create", "--entrypoint", "/bin/sh", image], operation="flatten")
        container = created.stdout.strip()
        try:
            import_cmd = [self.binary, "import"]
            for change in commit_changes(config):
                import_cmd.extend(["--change", change])
            import_cmd.append("-")
            try:
                exporter = subprocess.Popen(
                    [self.binary, "export", container],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
                importer = subprocess.run(
                    import_cmd,
                    stdin=exporter.stdout,
                    capture_output=True,
                    text=True,
                    check=False,
                )
                if exporter.stdout is not None:
                    exporter.stdout.close()
                export_code = exporter.wait()
            except OSError as exc:
                raise self._unavailable("flatten", exc) from exc
            if export_code != 0 or importer.returncode != 0:
                raise AdapterFailure(
                    "Flattening the image failed.",
                    context={
                        "runtime": self.name,
                        "operation": "flatten",
                        "image": image,
                        "stderr": importer.stderr[:2000] if importer.stderr else "",
                    },
                )
            return importer.stdout.strip()
        finally:
            self._run(["rm", "-f", container], operation="flatten", check=False)

    def _run(
        self,
        args: list[str],
        *,
        operation: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.binary, *args]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise self._unavailable(operation, exc) from exc
        if check and result.returncode != 0:
            raise AdapterFailure(
                f"{self.binary} {args[0]} failed.",
                hint="Check that the container daemon is running and reachable.",
                context={
                    "runtime": self.name,
                    "operation": operation,
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[:2000] if result.stderr else "",
                    "command": " ".join(cmd),
                },
            )
        return result

    def _unavailable(self, operation: str, exc: OSError) -> AdapterFailure:
        hint = None
        if shutil.which(self.binary) is None:
            hint = f"Install {self.binary} and ensure it is on PATH."
        return AdapterFailure(
            f"Could not invoke {self.binary}.",
            hint=hint,
            context={"runtime": self.name, "operation": operation, "error": str(exc)},
        )

    def _parse_inspect(self, stdout: str, name: str) -> dict[str, Any]:
        try:
            parsed = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise AdapterFailure(
                "Image inspect output is not valid JSON.",
                context={"runtime": self.name, "operation": "resolve", "image": name},
            ) from exc
        if not isinstance(parsed, list) or not parsed or not isinstance(parsed[0], dict):
            raise AdapterFailure(
                "Image inspect returned no image.",
                context={"runtime": self.name, "operation": "resolve", "image": name},
            )
        return parsed[0]


def config_from_inspect(document: dict[str, Any]) -> ImageConfig:
    raw = document.get("Config") or {}
    env: dict[str, str] = {}
    for entry in raw.get("Env") or []:
        key, _, value = entry.partition("=")
        env[key] = value
    entrypoint = raw.get("Entrypoint")
    cmd = raw.get("Cmd")
    return ImageConfig(
        workdir=raw.get("WorkingDir") or "/",
        user=raw.get("User") or None,
        env=env,
        entrypoint=None if entrypoint is None else tuple(entrypoint),
        cmd=None if cmd is None else tuple(cmd),
        labels=dict(raw.get("Labels") or {}),
    )


def commit_changes(config: ImageConfig) -> list[str]:
    """Dockerfile-style ``--change`` instructions reproducing *config*."""
    changes = [f"WORKDIR {config.workdir}"]
    if config.user:
        changes.append(f"USER {config.user}")
    for key, value in config.env.items():
        changes.append(f"ENV {key}={json.dumps(value)}")
    changes.append(f"ENTRYPOINT {json.dumps(list(config.entrypoint or ()))}")
    changes.append(f"CMD {json.dumps(list(config.cmd or ()))}")
    for key, value in config.labels.items():
        changes.append(f"LABEL {json.dumps(key)}={json.dumps(value)}")
    return changes


def _env_args(env: dict[str, str]) -> list[str]:
    args: list[str] = []
    for key, value in env.items():
        args.extend(["-e", f"{key}={value}"])
    return args
