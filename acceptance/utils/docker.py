# Copyright (c) 2024, Crash Override, Inc.
#
# This file is part of the lifecycle acceptance harness
from pathlib import Path
from typing import Any, Optional

from .log import get_logger
from .os import Program, run


logger = get_logger()


class Docker:
    @staticmethod
    def build_cmd(
        *,
        tag: str,
        context: Path | str,
        dockerfile: Optional[Path | str] = None,
        args: Optional[dict[str, str]] = None,
    ) -> list[str]:
        cmd = ["docker", "build", "-t", tag]
        if dockerfile:
            cmd += ["-f", str(dockerfile)]
        for name, value in (args or {}).items():
            cmd += [f"--build-arg={name}={value}"]
        cmd += [str(context)]
        return cmd

    @staticmethod
    def build(
        *,
        tag: str,
        context: Path | str,
        dockerfile: Optional[Path | str] = None,
        args: Optional[dict[str, str]] = None,
        buildkit: bool = True,
        env: Optional[dict[str, str]] = None,
    ) -> Program:
        """
        run docker build with parameters
        """
        return run(
            Docker.build_cmd(
                tag=tag,
                context=context,
                dockerfile=dockerfile,
                args=args,
            ),
            env={**Docker.build_env(buildkit=buildkit), **(env or {})},
        )

    @staticmethod
    def build_env(
        *,
        buildkit: bool = True,
    ) -> dict[str, str]:
        return {"DOCKER_BUILDKIT": str(int(buildkit))}

    @staticmethod
    def config_env(docker_config: Optional[Path | str]) -> dict[str, str]:
        # docker cli resolves registry credentials from DOCKER_CONFIG
        if docker_config is None:
            return {}
        return {"DOCKER_CONFIG": str(docker_config)}

    @staticmethod
    def push(
        tag: str,
        docker_config: Optional[Path | str] = None,
        expected_success: bool = True,
    ) -> Program:
        return run(
            ["docker", "push", tag],
            env=Docker.config_env(docker_config),
            expected_exit_code=int(not expected_success),
        )

    @staticmethod
    def pull(
        tag: str,
        docker_config: Optional[Path | str] = None,
        expected_success: bool = True,
    ) -> Program:
        return run(
            ["docker", "pull", tag],
            env=Docker.config_env(docker_config),
            expected_exit_code=int(not expected_success),
        )

    @staticmethod
    def tag(tag: str, new_tag: str) -> Program:
        return run(["docker", "tag", tag, new_tag])

    @staticmethod
    def info() -> dict[str, Any]:
        return run(
            ["docker", "info", "--format", "{{ json . }}"],
            log_level="debug",
        ).json()

    @staticmethod
    def inspect(name: str) -> list[dict[str, Any]]:
        return run(["docker", "inspect", name], log_level="debug").json()

    @staticmethod
    def image_exists(image: str) -> bool:
        return bool(
            run(
                ["docker", "image", "inspect", image],
                check=False,
                log_level="debug",
            )
        )

    @staticmethod
    def remove_image(image: str) -> Program:
        # failure is reported to the caller which decides whether it is fatal
        return run(
            ["docker", "image", "rm", "-f", image],
            check=False,
            log_level="debug",
        )

    @staticmethod
    def run(
        image: str,
        params: Optional[list[str]] = None,
        *,
        network: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        entrypoint: Optional[str] = None,
        user: Optional[str] = None,
        volumes: Optional[dict[Path, Path | str]] = None,
        expected_success: bool = True,
        timeout: Optional[int] = None,
        check: bool = True,
    ) -> Program:
        cmd = ["docker", "run", "--rm"]
        if network:
            cmd += ["--network", network]
        for name, value in (env or {}).items():
            cmd += ["--env", f"{name}={value}"]
        if entrypoint:
            cmd += ["--entrypoint", entrypoint]
        if user:
            cmd += ["-u", user]
        for host, container in (volumes or {}).items():
            cmd += ["-v", f"{host}:{container}"]
        cmd += [image]
        cmd += params or []
        return run(
            cmd,
            check=check,
            expected_exit_code=int(not expected_success),
            timeout=timeout,
        )
