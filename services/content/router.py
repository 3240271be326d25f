"""
services/content/router.py
Read-only editorial content: blog categories, posts and announcement banners.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.models.models import AnnouncementBanner, BlogCategory, BlogPost
from shared.schemas.schemas import (
    BannerResponse,
    BlogCategoryResponse,
    BlogPostResponse,
    BlogPostSummary,
)
from shared.utils.dates import utcnow

router = APIRouter(prefix="/api", tags=["Content"])


@router.get("/blog/categories", response_model=List[BlogCategoryResponse])
async def list_categories(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(BlogCategory).order_by(BlogCategory.name.asc()))
    return [BlogCategoryResponse.model_validate(c) for c in result.scalars()]


@router.get("/blog/categories/{category_id}", response_model=BlogCategoryResponse)
async def get_category(category_id: UUID, db: AsyncSession = Depends(get_db)):
    category = await db.scalar(select(BlogCategory).where(BlogCategory.id == category_id))
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    return BlogCategoryResponse.model_validate(category)


@router.get("/blog/posts", response_model=List[BlogPostSummary])
async def list_posts(
    category: Optional[str] = Query(None, description="Category slug"),
    search: Optional[str] = Query(None, max_length=100),
    featured: Optional[bool] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Published posts, newest first."""
    query = select(BlogPost).where(BlogPost.is_published == True)  # noqa: E712
    if category:
        query = query.join(BlogCategory, BlogCategory.id == BlogPost.category_id).where(
            BlogCategory.slug == category
        )
    if featured is not None:
        query = query.where(BlogPost.is_featured == featured)
    if search:
        like = f"%{search.lower()}%"
        query = query.where(
            or_(func.lower(BlogPost.title).like(like), func.lower(BlogPost.excerpt).like(like))
        )

    result = await db.execute(
        query.order_by(BlogPost.published_at.desc(), BlogPost.created_at.desc()).limit(limit)
    )
    return [BlogPostSummary.model_validate(p) for p in result.scalars()]


@router.get("/blog/posts/{slug}", response_model=BlogPostResponse)
async def get_post(slug: str, db: AsyncSession = Depends(get_db)):
    """Full post; each read counts as a view."""
    post = await db.scalar(
        select(BlogPost).where(BlogPost.slug == slug, BlogPost.is_published == True)  # noqa: E712
    )
    if not post:
        raise HTTPException(status_code=404, detail="Post not found")

    await db.execute(
        update(BlogPost)
        .where(BlogPost.id == post.id)
        .values(view_count=BlogPost.view_count + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(post)
    return BlogPostResponse.model_validate(post)


@router.get("/banners", response_model=List[BannerResponse])
async def list_banners(db: AsyncSession = Depends(get_db)):
    """Active banners inside their display window, highest priority first."""
    now = utcnow()
    result = await db.execute(
        select(AnnouncementBanner)
        .where(
            AnnouncementBanner.is_active == True,  # noqa: E712
            or_(AnnouncementBanner.starts_at.is_(None), AnnouncementBanner.starts_at <= now),
            or_(AnnouncementBanner.ends_at.is_(None), AnnouncementBanner.ends_at >= now),
        )
        .order_by(AnnouncementBanner.priority.desc(), AnnouncementBanner.created_at.desc())
    )
    return [BannerResponse.model_validate(b) for b in result.scalars()]
