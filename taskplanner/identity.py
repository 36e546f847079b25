"""
taskplanner identity constants, shared by the CLI and the package root.
"""

__version__ = "0.4.0"
__codename__ = "TASKPLANNER"
__tagline__ = "Phases in order. Waves behind gates."

BANNER = r"""
  _            _          _
 | |_ __ _ ___| | ___ __ | | __ _ _ __  _ __   ___ _ __
 | __/ _` / __| |/ / '_ \| |/ _` | '_ \| '_ \ / _ \ '__|
 | || (_| \__ \   <| |_) | | (_| | | | | | | |  __/ |
  \__\__,_|___/_|\_\ .__/|_|\__,_|_| |_|_| |_|\___|_|
                   |_|
"""
