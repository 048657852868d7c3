"""Package entry point for ``python -m scriptlift``.

WHY: Users run ``python -m scriptlift transcribe interview.mp3`` or
``python -m scriptlift serve`` without installing a console script.

HOW: Delegates straight to the CLI's main() function, which owns argument
parsing and sub-command dispatch.
"""

from scriptlift.cli import main

if __name__ == "__main__":
    main()
