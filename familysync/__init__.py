"""
familysync - Source Package

Offline-first synchronisation core for a family finance planner.
Every device keeps its own local entity stores and reconciles them
through one shared (optionally encrypted) sync file.

DESIGN PRINCIPLES:
1. Local state is always usable; the sync file is a meeting point
2. Conflicts are resolved by merging, never by locking
3. Deletions travel as tombstones
4. Failures are surfaced as status, not raised into callers
5. Storage backends are swappable
"""

__version__ = "1.0.0"
__author__ = "familysync Team"
