# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Scoped release of devices, mounts and scratch files in reverse acquisition order."""

import contextlib
import sys

from .errors import MkdiskError, ResourceLeakError


class Teardown:
    """Register a release for each resource as it is acquired.

    On scope exit every release runs, newest first, whether the scope
    succeeded, failed or was interrupted. A release that raises does not stop
    the others:

      - if the resource ended up released anyway, the error is kept and
        re-raised on the success path (e.g. a write-back failure on unmount);
      - if it is still held, a ResourceLeakError is recorded.

    Leaks are attached to the in-flight error as `.leaks`; with no error in
    flight the first one is raised.
    """

    def __init__(self, on_unwind=None):
        self._stack = contextlib.ExitStack()
        self._on_unwind = on_unwind
        self.errors = []
        self.leaks = []

    def __enter__(self):
        self._stack.__enter__()
        return self

    def register(self, name, release, is_released=lambda: True):
        def run():
            try:
                release()
            except (MkdiskError, OSError) as e:
                if is_released():
                    self.errors.append(e)
                    return
                leak = ResourceLeakError(f"{name} could not be released: {e}", resource=name)
                leak.__cause__ = e
                print(f"  WARNING: {leak}", file=sys.stderr)
                self.leaks.append(leak)
        self._stack.callback(run)

    def __exit__(self, exc_type, exc, tb):
        if exc is not None and self._on_unwind is not None:
            self._on_unwind(exc)
        self._stack.__exit__(exc_type, exc, tb)

        if exc is not None:
            for err in self.errors:
                print(f"  WARNING: during teardown: {err}", file=sys.stderr)
            if isinstance(exc, MkdiskError):
                exc.leaks.extend(self.leaks)
            return False

        if self.errors:
            first = self.errors[0]
            if isinstance(first, MkdiskError):
                first.leaks.extend(self.leaks)
            raise first
        if self.leaks:
            first = self.leaks[0]
            first.leaks.extend(self.leaks[1:])
            raise first
        return False
