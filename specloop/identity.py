"""SPECLOOP identity: name, version and banner."""

__codename__ = "SPECLOOP"
__version__ = "0.3.0"
__tagline__ = "One task per idle. Stop when the board is clear."

BANNER = r"""
  ___ ___ ___ ___ _    ___   ___  ___
 / __| _ \ __/ __| |  / _ \ / _ \| _ \
 \__ \  _/ _| (__| |_| (_) | (_) |  _/
 |___/_| |___\___|____\___/ \___/|_|
"""
