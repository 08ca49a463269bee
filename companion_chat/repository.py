"""Companion and turn persistence used by the chat engine.

The engine only needs two things from the relational store: a companion with
the caller's most recent turns, and a way to record new turns. The in-memory
implementation backs local runs and tests.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from .models import Companion, Turn

logger = logging.getLogger(__name__)


class CompanionRepository:
    """Interface to the store that owns companion and turn records."""

    def get_companion(
        self, companion_id: str, *, user_id: str, recent_limit: int
    ) -> Optional[Tuple[Companion, List[Turn]]]:
        """Return the companion and the user's newest turns (newest first), or None."""
        raise NotImplementedError

    def create_turn(self, turn: Turn) -> Turn:
        raise NotImplementedError


class InMemoryCompanionRepository(CompanionRepository):
    def __init__(self) -> None:
        self._companions: Dict[str, Companion] = {}
        self._turns: Dict[str, List[Turn]] = defaultdict(list)
        self._lock = threading.Lock()

    def add_companion(self, companion: Companion) -> Companion:
        with self._lock:
            self._companions[companion.id] = companion
        logger.info("Registered companion %s (%s)", companion.id, companion.name)
        return companion

    def get_companion(
        self, companion_id: str, *, user_id: str, recent_limit: int
    ) -> Optional[Tuple[Companion, List[Turn]]]:
        with self._lock:
            companion = self._companions.get(companion_id)
            if companion is None:
                return None
            ordered = [
                (position, turn)
                for position, turn in enumerate(self._turns[companion_id])
                if turn.author_id == user_id
            ]
        # Insertion order breaks ties between turns created in the same instant.
        ordered.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return companion, [turn for _, turn in ordered[:recent_limit]]

    def create_turn(self, turn: Turn) -> Turn:
        with self._lock:
            if turn.companion_id not in self._companions:
                raise KeyError(f"Unknown companion '{turn.companion_id}'")
            self._turns[turn.companion_id].append(turn)
        return turn

    def load_companions(self, path: str) -> int:
        """Register every companion listed in a JSON file and return how many were loaded."""
        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"{path} must contain a list of companion records")
        for record in records:
            self.add_companion(
                Companion(
                    id=record["id"],
                    name=record["name"],
                    description=record.get("description", ""),
                    instructions=record.get("instructions", ""),
                    seed=record.get("seed", ""),
                    src=record.get("src", ""),
                    owner_id=record.get("owner_id"),
                )
            )
        return len(records)

    def turns_for(self, companion_id: str, user_id: Optional[str] = None) -> List[Turn]:
        """Return stored turns in insertion order, optionally for one user."""
        with self._lock:
            turns = list(self._turns.get(companion_id, []))
        if user_id is not None:
            turns = [turn for turn in turns if turn.author_id == user_id]
        return turns
