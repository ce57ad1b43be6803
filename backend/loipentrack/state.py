from __future__ import annotations

import ipaddress
import json
from threading import RLock
from typing import Any, Dict, Iterable, List

from sqlalchemy.orm import Session

from .config import Settings
from .models import AppSetting
from .timer import TimerRegistry


class RuntimeState:
    """Mutable runtime configuration plus the per-user timer sessions."""

    def __init__(self, base_settings: Settings):
        self._lock = RLock()
        self._block_ips: List[str] = list(base_settings.block_ips)
        self._block_networks = self._build_networks(self._block_ips)
        self.timers = TimerRegistry(checkpoint_pauses=base_settings.pause_checkpoints)

    @property
    def block_ips(self) -> List[str]:
        with self._lock:
            return list(self._block_ips)

    @property
    def block_networks(self) -> Iterable[ipaddress._BaseNetwork]:
        with self._lock:
            return list(self._block_networks)

    @property
    def pause_checkpoints(self) -> bool:
        return self.timers.checkpoint_pauses

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "block_ips": list(self._block_ips),
                "pause_checkpoints": self.timers.checkpoint_pauses,
            }

    def apply(self, updates: Dict[str, Any]) -> None:
        with self._lock:
            if "block_ips" in updates and updates["block_ips"] is not None:
                block_ips = [ip.strip() for ip in updates["block_ips"] if ip.strip()]
                self._block_ips = block_ips
                self._block_networks = self._build_networks(block_ips)
            if "pause_checkpoints" in updates and updates["pause_checkpoints"] is not None:
                # Only sessions created afterwards pick up the new mode
                self.timers.checkpoint_pauses = bool(updates["pause_checkpoints"])

    def load_from_db(self, session: Session) -> None:
        records = session.query(AppSetting).all()
        decoded: Dict[str, Any] = {}
        for record in records:
            if record.key == "block_ips":
                try:
                    decoded["block_ips"] = json.loads(record.value)
                except json.JSONDecodeError:
                    decoded["block_ips"] = []
            elif record.key == "pause_checkpoints":
                decoded["pause_checkpoints"] = record.value == "true"
        if decoded:
            self.apply(decoded)

    def persist(self, session: Session, updates: Dict[str, Any]) -> None:
        for key, value in updates.items():
            if key == "block_ips":
                value = json.dumps([ip.strip() for ip in value or [] if ip.strip()])
            elif key == "pause_checkpoints":
                value = "true" if value else "false"
            else:
                continue
            record = session.query(AppSetting).filter(AppSetting.key == key).one_or_none()
            if record:
                record.value = value
            else:
                session.add(AppSetting(key=key, value=value))
        session.commit()

    @staticmethod
    def _build_networks(entries: List[str]) -> List[ipaddress._BaseNetwork]:
        networks: List[ipaddress._BaseNetwork] = []
        for entry in entries:
            try:
                networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                try:
                    networks.append(ipaddress.ip_network(f"{entry}/32", strict=False))
                except ValueError:
                    continue
        return networks
