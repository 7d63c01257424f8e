"""
Configuration Package

Structure:
  basic_settings.py - Channels, episode source, logging
  audio_settings.py - FFmpeg, Opus output, fetch headers, sink buffer
  timing.py         - Resume threshold, watchdog bounds, retry and reconnect timing

User-facing text and embed appearance live in settings.yaml / messages.yaml,
loaded by utils.config.ConfigManager.
"""

from .basic_settings import *
from .audio_settings import *
from .timing import *
