"""命令执行模块：黑名单拦截、工作目录限制、超时与输出截断"""

import asyncio
import contextlib
import logging
import os
import re
import signal
import subprocess
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import CommandBlockedError, CommandTimeoutError, DirectoryNotAllowedError
from .models import ShellResult

logger = logging.getLogger(__name__)

TRUNCATED_MARKER = "\n... [输出已截断]"

# 以 '^' 开头的条目按正则匹配，其余按 "完全相同或以 '条目 + 空格' 开头" 匹配
BLOCKED_COMMANDS = [
    # 危险删除
    "rm -rf /",
    "rm -rf /*",
    "rm -rf ~",
    "rm -rf ~/*",
    "rm -rf .",
    "rm -rf *",
    "deltree",
    r"^rd\s+/s\s+/q\s+[a-z]:\\?\s*$",
    r"^del\s+/[fsq].*[a-z]:\\\*",
    # 格式化与分区
    "format",
    "fdisk",
    "diskpart",
    "parted",
    r"^mkfs(\.\w+)?\b",
    r"^dd\s+.*of=/dev/",
    "chkdsk /f",
    "chkdsk /r",
    # 权限接管
    "mklink",
    "attrib +s +h",
    "takeown",
    "icacls",
    "chmod -r 777 /",
    # 远程代码执行
    r"^(curl|wget)\b.*\|\s*(sudo\s+)?(ba|z|da)?sh\b",
    r"^(invoke-webrequest|iwr|invoke-restmethod|irm)\b.*\|\s*(iex|invoke-expression)\b",
    r"^.*downloadstring\s*\(",
    # fork 炸弹
    ":(){ :|:& };:",
    # 关机与重启
    "shutdown",
    "init 0",
    "init 6",
    "reboot",
    "poweroff",
    "halt",
]


def default_shell() -> str:
    if os.name == "nt":
        return "powershell.exe"
    return os.environ.get("SHELL") or "/bin/sh"


def shell_argv(shell: str, command: str) -> List[str]:
    """按解释器类型构造调用参数"""
    name = re.split(r"[\\/]", shell)[-1].lower()
    if name.endswith(".exe"):
        name = name[:-4]
    if name in ("powershell", "pwsh"):
        return [shell, "-NoProfile", "-Command", command]
    if name == "cmd":
        return [shell, "/d", "/c", command]
    return [shell, "-c", command]


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + TRUNCATED_MARKER
    return text


def format_shell_result(result: ShellResult) -> str:
    """格式化执行结果，供下一轮提示词使用"""
    parts = [
        f"命令：{result.command}",
        f"退出码：{result.exit_code}",
        f"执行时间：{result.duration}ms",
    ]
    if result.stdout:
        parts.append(f"\n标准输出:\n{result.stdout}")
    if result.stderr:
        parts.append(f"\n标准错误:\n{result.stderr}")
    return "\n".join(parts)


class ShellExecutor:
    """
    在策略限制下执行单条命令。

    只有策略违规（黑名单、目录越界）与超时会抛出异常；
    其余失败以非零退出码的 ShellResult 返回。
    """

    def __init__(
        self,
        blocked_commands: Optional[Iterable[str]] = None,
        allowed_directories: Optional[Iterable[str]] = None,
        max_output_length: int = 50000,
        default_timeout: int = 30000,
    ):
        self.blocked_commands: List[str] = list(BLOCKED_COMMANDS)
        self.add_blocked_commands(blocked_commands or [])
        if allowed_directories is None:
            allowed_directories = [os.getcwd()]
        self.allowed_directories: List[str] = []
        for directory in allowed_directories:
            self.add_allowed_directory(directory)
        self.max_output_length = max_output_length
        self.default_timeout = default_timeout

    def is_blocked(self, command: str) -> bool:
        normalized = command.strip().lower()
        for blocked in self.blocked_commands:
            if blocked.startswith("^"):
                if re.search(blocked, normalized, re.I):
                    return True
            elif normalized == blocked or normalized.startswith(blocked + " "):
                return True
        return False

    def validate_work_dir(self, work_dir: Optional[str] = None) -> str:
        """
        返回解析后的绝对路径；不在任何允许目录（或其子目录）内时抛出 DirectoryNotAllowedError。

        未指定时使用进程当前目录。允许目录列表为空表示不限制。
        """
        if not work_dir:
            return os.getcwd()

        resolved = Path(work_dir).expanduser().resolve()
        if not self.allowed_directories:
            return str(resolved)
        for root in self.allowed_directories:
            root_path = Path(root)
            if resolved == root_path or root_path in resolved.parents:
                return str(resolved)
        raise DirectoryNotAllowedError(work_dir, self.allowed_directories)

    async def execute(
        self,
        command: str,
        shell: Optional[str] = None,
        work_dir: Optional[str] = None,
        timeout: Optional[float] = None,
        capture_output: bool = True,
    ) -> ShellResult:
        if self.is_blocked(command):
            raise CommandBlockedError(command)

        cwd = self.validate_work_dir(work_dir)
        timeout = timeout if timeout else self.default_timeout
        argv = shell_argv(shell or default_shell(), command)
        pipe = asyncio.subprocess.PIPE if capture_output else asyncio.subprocess.DEVNULL
        started = time.monotonic()

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv, cwd=cwd, stdout=pipe, stderr=pipe, **_new_process_group()
            )
        except OSError as e:
            logger.error("命令启动失败: %s (%s)", command, e)
            return ShellResult(
                stdout="",
                stderr=_truncate(str(e), self.max_output_length) if capture_output else "",
                exit_code=127,
                duration=_elapsed_ms(started),
                command=command,
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout / 1000)
        except asyncio.TimeoutError:
            await _kill_process_tree(proc)
            logger.error("命令执行超时（>%dms），已终止: %s", timeout, command)
            raise CommandTimeoutError(command, timeout) from None

        result = ShellResult(
            stdout=_decode(stdout, self.max_output_length) if capture_output else "",
            stderr=_decode(stderr, self.max_output_length) if capture_output else "",
            exit_code=proc.returncode if proc.returncode is not None else 1,
            duration=_elapsed_ms(started),
            command=command,
        )
        logger.info("✓ 命令执行完成: %s (退出码 %d, %dms)", command, result.exit_code, result.duration)
        return result

    async def execute_and_format(self, command: str, **kwargs: Any) -> str:
        return format_shell_result(await self.execute(command, **kwargs))

    def add_blocked_commands(self, commands: Iterable[str]):
        for command in commands:
            entry = command if command.startswith("^") else command.strip().lower()
            if entry and entry not in self.blocked_commands:
                self.blocked_commands.append(entry)

    def add_allowed_directory(self, directory: str):
        resolved = str(Path(directory).expanduser().resolve())
        if resolved not in self.allowed_directories:
            self.allowed_directories.append(resolved)

    def get_config(self) -> Dict[str, Any]:
        return {
            "blocked_commands": list(self.blocked_commands),
            "allowed_directories": list(self.allowed_directories),
            "max_output_length": self.max_output_length,
            "default_timeout": self.default_timeout,
        }


def _new_process_group() -> Dict[str, Any]:
    """让命令在独立进程组中运行，超时时可以连同子进程一起终止"""
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


async def _kill_process_tree(proc: asyncio.subprocess.Process):
    """终止解释器及其启动的所有子进程"""
    if os.name == "nt":
        killer = await asyncio.create_subprocess_exec(
            "taskkill", "/T", "/F", "/PID", str(proc.pid),
            stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
    else:
        with contextlib.suppress(ProcessLookupError):
            os.killpg(proc.pid, signal.SIGKILL)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    await proc.wait()


def _decode(data: Optional[bytes], limit: int) -> str:
    if not data:
        return ""
    return _truncate(data.decode("utf-8", errors="replace"), limit)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
