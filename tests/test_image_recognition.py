from datetime import datetime, timedelta, timezone
from io import BytesIO

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import shopbot.models  # noqa: F401
from shopbot.ai.base import LLMProviderError, TokenUsage, VisionResult
from shopbot.ai.schema import VisionAnalysis
from shopbot.core.database import Base
from shopbot.image_recognition.cache import check_cache, clear_expired_cache, save_to_cache
from shopbot.image_recognition.features import RGBColor, VisualFeatures, extract_visual_features
from shopbot.image_recognition.pipeline import FetchedImage, ImageFetchError, recognize_image
from shopbot.image_recognition.tier1 import compute_image_hash
from shopbot.image_recognition.tier2 import find_tier2_match, score_features
from shopbot.image_recognition.tier3 import find_tier3_match, score_product
from shopbot.models.api_usage import ApiUsage
from shopbot.models.image_recognition_cache import ImageRecognitionCache
from shopbot.models.product import Product
from tests.fixtures_data import BLUE_JEANS, RED_TSHIRT, WORKSPACE_ID

RED_PALETTE = [
    RGBColor(r=200, g=30, b=40),
    RGBColor(r=150, g=20, b=30),
    RGBColor(r=240, g=240, b=240),
]


class _FakeVisionProvider:
    name = "fake"

    def __init__(self, data=None, error=None):
        self.data = data or {}
        self.error = error
        self.calls = 0

    def vision_analyze(self, image, instructions, *, content_type="image/jpeg"):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return VisionResult(data=dict(self.data), usage=TokenUsage(input_tokens=120, output_tokens=40))

    def complete(self, *args, **kwargs):
        raise AssertionError("completion is not used by image recognition")


def _build_db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def _add_product(db, data, **overrides):
    product = Product(**{**data, **overrides})
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


def _png(color=(30, 200, 90), size=(64, 64)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def test_identical_features_score_full_marks():
    features = VisualFeatures(aspect_ratio=1.0, dominant_colors=RED_PALETTE)

    scores = score_features(features, features)

    assert scores.color_score == 100.0
    assert scores.aspect_ratio_score == 100.0
    assert scores.total_score == 100.0


def test_tier2_threshold_is_strict():
    db = _build_db()
    _add_product(
        db,
        RED_TSHIRT,
        visual_features={"aspectRatio": 1.2, "dominantColors": [c.model_dump() for c in RED_PALETTE]},
    )
    features = VisualFeatures(aspect_ratio=1.0, dominant_colors=RED_PALETTE)

    result = find_tier2_match(db, features, WORKSPACE_ID, threshold=92)

    assert result.metadata["scores"]["totalScore"] == 92.0
    assert result.matched is False


def test_tier2_just_above_threshold_matches():
    db = _build_db()
    product = _add_product(
        db,
        RED_TSHIRT,
        visual_features={"aspectRatio": 1.19975, "dominantColors": [c.model_dump() for c in RED_PALETTE]},
    )
    features = VisualFeatures(aspect_ratio=1.0, dominant_colors=RED_PALETTE)

    result = find_tier2_match(db, features, WORKSPACE_ID, threshold=92)

    assert result.matched is True
    assert result.product.id == product.id
    assert result.confidence == 92.01
    assert result.tier == "tier2"


def test_primary_color_mismatch_is_penalized():
    red = VisualFeatures(aspect_ratio=1.0, dominant_colors=RED_PALETTE)
    blue = VisualFeatures.model_validate(BLUE_JEANS["visual_features"])

    scores = score_features(red, blue)

    assert scores.total_score < 60


def test_tier2_ignores_other_workspaces():
    db = _build_db()
    _add_product(db, RED_TSHIRT, workspace_id=WORKSPACE_ID + 1)
    features = VisualFeatures.model_validate(RED_TSHIRT["visual_features"])

    assert find_tier2_match(db, features, WORKSPACE_ID).matched is False


def test_extract_visual_features_reads_aspect_ratio_and_colors():
    features = extract_visual_features(_png(color=(200, 30, 40), size=(120, 60)))

    assert features.aspect_ratio == 2.0
    assert features.dominant_colors
    first = features.dominant_colors[0]
    assert abs(first.r - 200) < 10 and abs(first.g - 30) < 10 and abs(first.b - 40) < 10


def test_tier3_keyword_scoring():
    product = Product(**RED_TSHIRT)
    analysis = VisionAnalysis(
        category="shirt",
        color="red",
        visual_description_keywords=["polo", "cotton", "collar"],
    )

    # category "shirt" sits inside keyword "tshirt"
    assert score_product(analysis, product) == 10 + 15 + 12 * 2


def test_tier3_falls_back_to_name_and_description_without_keywords():
    product = Product(**{**BLUE_JEANS, "search_keywords": []})
    analysis = VisionAnalysis(category="clothing", color="blue", visual_description_keywords=["denim", "slim"])

    assert score_product(analysis, product) == 10 + 15 + 5 * 2


def test_tier3_picks_best_product_above_threshold():
    db = _build_db()
    _add_product(db, RED_TSHIRT)
    jeans = _add_product(db, BLUE_JEANS)
    analysis = VisionAnalysis(category="pant", color="blue", visual_description_keywords=["denim", "jeans"])

    result = find_tier3_match(db, analysis, WORKSPACE_ID)

    assert result.matched is True
    assert result.product.id == jeans.id
    assert result.metadata["score"] == 10 + 12 * 2


def test_cache_round_trip_and_expiry():
    db = _build_db()
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    save_to_cache(db, "h" * 64, WORKSPACE_ID, product_id=3, confidence=55, now=now)

    assert check_cache(db, "h" * 64, WORKSPACE_ID, now=now + timedelta(days=1)).product_id == 3
    assert check_cache(db, "h" * 64, WORKSPACE_ID + 1, now=now) is None
    assert check_cache(db, "h" * 64, WORKSPACE_ID, now=now + timedelta(days=31)) is None
    assert clear_expired_cache(db, now=now + timedelta(days=31)) == 1
    assert db.query(ImageRecognitionCache).count() == 0


def test_pipeline_exact_hash_hits_tier1():
    db = _build_db()
    image = _png()
    product = _add_product(db, RED_TSHIRT, image_hash=compute_image_hash(image))
    provider = _FakeVisionProvider()

    image_input = FetchedImage(content=image, content_type="image/png")

    result = recognize_image(db, WORKSPACE_ID, image=image_input, provider=provider)

    assert result.tier == "tier1"
    assert result.product.id == product.id
    assert result.confidence == 100.0
    assert result.image_hash == compute_image_hash(image)
    assert provider.calls == 0


def test_pipeline_tier3_match_is_cached_and_billed():
    db = _build_db()
    jeans = _add_product(db, BLUE_JEANS, visual_features=None)
    provider = _FakeVisionProvider(
        data={"category": "pant", "color": "blue", "visual_description_keywords": ["denim", "jeans"]}
    )
    image = FetchedImage(content=_png(color=(30, 60, 160)), content_type="image/png")

    first = recognize_image(db, WORKSPACE_ID, image=image, provider=provider)
    second = recognize_image(db, WORKSPACE_ID, image=image, provider=provider)

    assert first.tier == "tier3"
    assert first.product.id == jeans.id
    assert second.tier == "cache"
    assert second.product.id == jeans.id
    assert provider.calls == 1
    usage = db.query(ApiUsage).one()
    assert usage.api_type == "openai_vision"
    assert usage.input_tokens == 120
    assert usage.image_hash == first.image_hash


def test_pipeline_negative_cache_skips_vision():
    db = _build_db()
    _add_product(db, BLUE_JEANS, visual_features=None)
    content = _png(color=(10, 10, 10))
    save_to_cache(db, compute_image_hash(content), WORKSPACE_ID, product_id=None, confidence=0)
    provider = _FakeVisionProvider()

    result = recognize_image(db, WORKSPACE_ID, image=FetchedImage(content=content), provider=provider)

    assert result.matched is False
    assert result.tier == "cache"
    assert provider.calls == 0


def test_pipeline_vision_failure_is_a_no_match():
    db = _build_db()
    provider = _FakeVisionProvider(error=LLMProviderError("timeout"))

    result = recognize_image(db, WORKSPACE_ID, image=FetchedImage(content=b"not an image"), provider=provider)

    assert result.matched is False
    assert result.metadata["error"] == "timeout"
    assert db.query(ApiUsage).count() == 0


def test_pipeline_empty_analysis_is_not_cached():
    db = _build_db()
    provider = _FakeVisionProvider(data={})
    content = _png()

    result = recognize_image(db, WORKSPACE_ID, image=FetchedImage(content=content), provider=provider)

    assert result.matched is False
    assert check_cache(db, compute_image_hash(content), WORKSPACE_ID) is None


def test_pipeline_fetch_failure_propagates():
    db = _build_db()

    def failing_fetcher(url):
        raise ImageFetchError("could not download image")

    with pytest.raises(ImageFetchError):
        recognize_image(db, WORKSPACE_ID, image_url="https://cdn.example.com/x.jpg", fetcher=failing_fetcher)
