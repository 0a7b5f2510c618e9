"""Stdin/stdout loop around UciProtocol.

Run with `python -m interface.uci`; this is what RemoteProtocolAdapter spawns
when no external engine is configured. Only protocol lines go to stdout,
logging goes to stderr.
"""

import logging
import sys
from typing import Optional, TextIO

from sparring.config import configure_logging
from sparring.protocol import ProtocolState, UciProtocol

logger = logging.getLogger(__name__)


def _send(line: str) -> None:
    print(line, flush=True)


class UCI:
    def __init__(self, stdin: Optional[TextIO] = None, write=_send):
        self.stdin = stdin or sys.stdin
        self.protocol = UciProtocol(write)

    def run(self):
        for raw in self.stdin:
            command = raw.strip()
            if not command:
                continue
            self.protocol.send(command)
            if self.protocol.state is ProtocolState.DISPOSED:
                break
        else:
            # End of input without quit: let a running search finish its bestmove.
            self.protocol.send("stop")
            self.protocol.wait(timeout=2.0)


def main():
    configure_logging()
    UCI().run()


if __name__ == "__main__":
    main()
