# -*- coding: utf-8 -*-
"""
System-wide block I/O counters for the primary disk.

The counters are cumulative since boot and shared by every process on the
host, so per-step deltas taken while other steps run concurrently include
their I/O too. That imprecision is accepted; the numbers are indicative.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import Optional, Sequence, Tuple

import psutil


logger = logging.getLogger(__name__)

DEFAULT_DEVICES = ("sda", "nvme0n1", "vda")

# Whole disks only; partitions (sda1, nvme0n1p1) would double count.
_WHOLE_DISK = re.compile(r"^(sd[a-z]+|vd[a-z]+|xvd[a-z]+|nvme\d+n\d+)$")


class SystemIOProbe:
    """Read cumulative bytes read/written by the primary block device.

    Parameters
    ----------
    devices : sequence of str
        Device names tried in order; the first one present is used. If none
        is present, the first whole-disk device (by name) is used instead.
    """

    def __init__(self, devices: Sequence[str] = DEFAULT_DEVICES) -> None:
        self.devices = tuple(devices)
        self._device: Optional[str] = None
        self._warned = False
        self._lock = threading.Lock()

    @property
    def device(self) -> Optional[str]:
        """Name of the device being read, once resolved."""
        return self._device

    def _pick_device(self, names: Sequence[str]) -> Optional[str]:
        for dev in self.devices:
            if dev in names:
                return dev
        whole = sorted(n for n in names if _WHOLE_DISK.match(n))
        return whole[0] if whole else None

    def _degrade(self, reason: str) -> Tuple[int, int]:
        with self._lock:
            if not self._warned:
                logger.warning("Disk I/O accounting unavailable (%s); reporting 0 bytes.", reason)
                self._warned = True
        return 0, 0

    def read(self) -> Tuple[int, int]:
        """
        Return ``(bytes_read, bytes_written)`` since boot.

        Returns ``(0, 0)`` rather than raising when no recognisable device is
        found or the counters cannot be read.
        """
        try:
            counters = psutil.disk_io_counters(perdisk=True, nowrap=True)
        except (OSError, RuntimeError) as err:
            return self._degrade(str(err))
        if not counters:
            return self._degrade("no disk counters exposed")

        dev = self._device if self._device in counters else self._pick_device(list(counters))
        if dev is None:
            return self._degrade(f"none of {', '.join(self.devices)} present")
        if dev != self._device:
            logger.debug("I/O probe using device %s", dev)
            self._device = dev
        stats = counters[dev]
        return int(stats.read_bytes), int(stats.write_bytes)
