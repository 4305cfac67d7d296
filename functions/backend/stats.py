"""
Statistics over brews and coffees.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Iterable

from backend.db import EntityRecord


def summarize_brews(brews: Iterable[EntityRecord]) -> dict:
    """
    Totals, average rating, brew method distribution (most used first) and
    per-method temperature range.
    """
    brews = list(brews)
    if not brews:
        return {
            "summary": {"total_brews": 0, "average_rating": 0},
            "brew_method_distribution": [],
            "temperature_stats": [],
        }

    ratings = [b.data["rating"] for b in brews if b.data.get("rating") is not None]
    method_counts = Counter(b.data.get("brew_method") for b in brews)
    temperatures: dict[str, list[float]] = defaultdict(list)
    for brew in brews:
        temp = brew.data.get("brew_temperature")
        if temp is not None:
            temperatures[brew.data.get("brew_method")].append(float(temp))

    distribution = _by_count(method_counts)
    return {
        "summary": {
            "total_brews": len(brews),
            "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
            "favorite_brew_method": distribution[0][0],
        },
        "brew_method_distribution": [
            {"brew_method": method, "count": count} for method, count in distribution
        ],
        "temperature_stats": [
            {
                "brew_method": method,
                "avg_temp": round(sum(temps) / len(temps), 2),
                "min_temp": min(temps),
                "max_temp": max(temps),
            }
            for method, temps in sorted(temperatures.items())
        ],
    }


def summarize_coffees(coffees: Iterable[EntityRecord]) -> dict:
    """Coffee count, money spent, and roast level and origin distributions."""
    coffees = list(coffees)
    prices = [c.data["price"] for c in coffees if c.data.get("price") is not None]
    roast_counts = Counter(c.data.get("roast_level") for c in coffees)
    origin_counts = Counter(c.data.get("origin") for c in coffees)
    return {
        "summary": {
            "total_coffees": len(coffees),
            "total_spent": round(sum(prices), 2),
            "public_coffees": sum(1 for c in coffees if c.data.get("is_public")),
        },
        "roast_level_distribution": [
            {"roast_level": level, "count": count}
            for level, count in _by_count(roast_counts)
        ],
        "origin_distribution": [
            {"origin": origin, "count": count}
            for origin, count in _by_count(origin_counts)
        ],
    }


def summarize_public_brews(brews: Iterable[EntityRecord], top: int = 5) -> dict:
    """What a friend's profile shows: public brew count, rating, top methods."""
    brews = list(brews)
    ratings = [b.data["rating"] for b in brews if b.data.get("rating") is not None]
    method_counts = Counter(b.data.get("brew_method") for b in brews)
    return {
        "total_public_brews": len(brews),
        "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0,
        "top_brew_methods": [
            {"brew_method": method, "count": count}
            for method, count in _by_count(method_counts)[:top]
        ],
    }


def _by_count(counts: Counter) -> list[tuple]:
    return sorted(counts.items(), key=lambda item: (-item[1], item[0] or ""))
