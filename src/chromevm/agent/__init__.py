"""Sandbox agent: the HTTP control process that runs inside each VM.

- ``session``: the Playwright browser session (one page per agent)
- ``capabilities``: the ``page``/``console`` objects scripts receive
- ``interpreter``: validation, compilation and timed execution of scripts
- ``executor``: single-slot run protocol around a session
- ``app``: FastAPI surface (``/health``, ``/info``, ``/run``, ``/browser/*``)
"""

from .capabilities import PageCapabilities, ScriptConsole
from .executor import ScriptExecutor, ScriptLibrary
from .interpreter import ScriptInterpreter
from .session import BrowserSession

__all__ = [
    "BrowserSession",
    "PageCapabilities",
    "ScriptConsole",
    "ScriptExecutor",
    "ScriptInterpreter",
    "ScriptLibrary",
]
