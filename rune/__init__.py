"""
Rune Core

The backend of a local desktop image library: a full-text searchable image
index, the lifecycle manager of a locally hosted vision-language model server,
and the background queue that tags imported images with it.
"""

__version__ = "1.0.0"
__author__ = "Rune Team"
