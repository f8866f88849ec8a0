#!/usr/bin/env python3
"""Tiny line-protocol worker used by demo.py.

Answers ``login USER PASS`` with ``200 welcome USER``, ``status`` with
``210 online``, ``quit`` by exiting, and anything else with a line that
is deliberately not in ``NNN text`` form.
"""

import sys


def main() -> int:
    print("220 echo worker ready", flush=True)
    for line in sys.stdin:
        if not line.strip():
            continue
        command, *params = line.split()
        if command == "quit":
            return 0
        if command == "login" and params:
            print(f"200 welcome {params[0]}", flush=True)
        elif command == "status":
            print("210 online", flush=True)
        elif command == "logout":
            print("221 bye", flush=True)
        else:
            print(f"what is {command}?", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
