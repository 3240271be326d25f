"""
tests/test_content.py
Blog categories, posts and announcement banners.
"""

import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AnnouncementBanner, BlogCategory, BlogPost
from shared.utils.dates import utcnow


@pytest_asyncio.fixture
async def blog(db: AsyncSession) -> dict:
    guides = BlogCategory(name="City Guides", slug="city-guides")
    safety = BlogCategory(name="Safety", slug="safety")
    db.add_all([guides, safety])
    await db.flush()

    now = utcnow()
    posts = {
        "lisbon": BlogPost(
            category_id=guides.id, title="Queer Lisbon in 48 hours", slug="queer-lisbon",
            excerpt="Príncipe Real and beyond", body="...", is_featured=True,
            published_at=now - timedelta(days=1),
        ),
        "travel": BlogPost(
            category_id=safety.id, title="Travelling safely as a couple", slug="travel-safely",
            body="...", published_at=now - timedelta(days=3),
        ),
        "draft": BlogPost(
            category_id=guides.id, title="Berlin draft", slug="berlin-draft",
            body="...", is_published=False,
        ),
    }
    db.add_all(posts.values())
    await db.commit()
    return {"categories": (guides, safety), "posts": posts}


# ── Categories ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_categories_sorted_by_name(client: AsyncClient, blog):
    response = await client.get("/api/blog/categories")
    assert [c["slug"] for c in response.json()] == ["city-guides", "safety"]


@pytest.mark.asyncio
async def test_category_detail_and_404(client: AsyncClient, blog):
    guides, _ = blog["categories"]
    assert (await client.get(f"/api/blog/categories/{guides.id}")).json()["name"] == "City Guides"
    assert (await client.get(f"/api/blog/categories/{uuid.uuid4()}")).status_code == 404


# ── Posts ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_posts_published_newest_first(client: AsyncClient, blog):
    response = await client.get("/api/blog/posts")
    assert [p["slug"] for p in response.json()] == ["queer-lisbon", "travel-safely"]


@pytest.mark.asyncio
async def test_post_filters(client: AsyncClient, blog):
    by_category = await client.get("/api/blog/posts", params={"category": "safety"})
    assert [p["slug"] for p in by_category.json()] == ["travel-safely"]

    featured = await client.get("/api/blog/posts", params={"featured": "true"})
    assert [p["slug"] for p in featured.json()] == ["queer-lisbon"]

    search = await client.get("/api/blog/posts", params={"search": "couple"})
    assert [p["slug"] for p in search.json()] == ["travel-safely"]


@pytest.mark.asyncio
async def test_reading_a_post_counts_views(client: AsyncClient, blog):
    first = await client.get("/api/blog/posts/queer-lisbon")
    assert first.status_code == 200
    assert first.json()["body"] == "..."
    assert first.json()["view_count"] == 1

    second = await client.get("/api/blog/posts/queer-lisbon")
    assert second.json()["view_count"] == 2


@pytest.mark.asyncio
async def test_drafts_and_unknown_posts_404(client: AsyncClient, blog):
    assert (await client.get("/api/blog/posts/berlin-draft")).status_code == 404
    assert (await client.get("/api/blog/posts/nope")).status_code == 404


# ── Banners ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_banners_window_and_priority(client: AsyncClient, db: AsyncSession):
    now = utcnow()
    db.add_all([
        AnnouncementBanner(message="Always on", priority=1),
        AnnouncementBanner(message="Pride month", priority=10,
                           starts_at=now - timedelta(days=1), ends_at=now + timedelta(days=1)),
        AnnouncementBanner(message="Expired", priority=50, ends_at=now - timedelta(hours=1)),
        AnnouncementBanner(message="Upcoming", priority=50, starts_at=now + timedelta(days=2)),
        AnnouncementBanner(message="Switched off", priority=99, is_active=False),
    ])
    await db.commit()

    response = await client.get("/api/banners")
    assert response.status_code == 200
    assert [b["message"] for b in response.json()] == ["Pride month", "Always on"]
