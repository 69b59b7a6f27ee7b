# Overview: Shared page/per_page slicing for list endpoints.

from __future__ import annotations


def paginate(base_query, page: int | None, per_page: int | None, serialize) -> dict:
    """
    Return {"items", "count"} for the whole query when page is None,
    otherwise one page plus pagination metadata.
    """
    if page is None:
        rows = base_query.all()
        return {
            "items": [serialize(row) for row in rows],
            "count": len(rows),
        }

    per_page = min(per_page or 20, 100)  # Default 20, max 100
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    rows = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [serialize(row) for row in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
