"""File transfer and firmware update for connected devices.

Lets a device receive files from the platform in framed chunks or by URL,
and install firmware on command while reporting status back.
"""
