"""
Travory - Source Package

Local-first trip planning core: itineraries, budgets, packing lists and
visited places are edited offline and silently mirrored to a per-account
cloud store.

DESIGN PRINCIPLES:
1. The local write is authoritative
2. Replication never blocks or fails a caller
3. Every view over the store is live
4. Side effects (images, reminders) never break a save
5. Storage backends are swappable
"""

__version__ = "1.0.0"
__author__ = "Travory Team"
