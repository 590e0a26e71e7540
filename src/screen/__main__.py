"""
Entry point for: python3 -m src.screen

Launches the screen registration agent.
"""

from .controller import main

if __name__ == "__main__":
    main()
