from __future__ import annotations

import sys

from termcolor import colored


def _ok(msg: str) -> str:
    return f"{colored('[+] ', 'green')}{msg}"


def _info(msg: str) -> str:
    return f"{colored('[*] ', 'yellow')}{msg}"


def _warn(msg: str) -> str:
    return f"{colored('[!] ', 'yellow')}{msg}"


def _err(msg: str) -> str:
    return f"{colored('[-] ', 'red')}{msg}"


def ok(msg: str) -> None:
    print(_ok(msg))


def info(msg: str) -> None:
    print(_info(msg))


def warn(msg: str) -> None:
    print(_warn(msg), file=sys.stderr)


def err(msg: str) -> None:
    print(_err(msg), file=sys.stderr)


def print_section(title: str) -> None:
    print(colored(title, "yellow", attrs=["bold"]) + ":")


def print_kv(key: str, value: object) -> None:
    print(f"  {colored(key + ':', 'white')} {value}")
