import pytest

from menusee.config import CostTable, ImageProvider, PipelineConfig, VisionProviderName, load_config


def test_defaults():
    cfg = load_config({})
    assert cfg.auto_image_limit == 0
    assert cfg.max_images_per_scan == 50
    assert cfg.default_image_provider == ImageProvider.OPENAI
    assert cfg.vision_provider == VisionProviderName.GEMINI
    assert cfg.costs == CostTable()
    assert cfg.store_backend == "memory"
    assert cfg.job_queue == "local"
    assert "{name}" in cfg.image_prompt_template and "{description}" in cfg.image_prompt_template


def test_env_overrides():
    cfg = load_config(
        {
            "AUTO_IMAGE_LIMIT": "3",
            "MAX_IMAGES_PER_SCAN": "10",
            "DEFAULT_IMAGE_PROVIDER": "NANO_BANANA",
            "COST_IMAGE_NANO_BANANA": "0.039",
            "STORE_BACKEND": "Postgres",
            "DATABASE_URL": "postgresql://localhost/menusee",
            "PUBLIC_BASE_URL": "https://api.example.com/",
        }
    )
    assert cfg.auto_image_limit == 3
    assert cfg.max_images_per_scan == 10
    assert cfg.default_image_provider == ImageProvider.NANO_BANANA
    assert cfg.image_cost(ImageProvider.NANO_BANANA) == pytest.approx(0.039)
    assert cfg.store_backend == "postgres"
    assert cfg.database_url == "postgresql://localhost/menusee"
    assert cfg.public_base_url == "https://api.example.com"


def test_bad_values_fall_back_to_defaults():
    cfg = load_config(
        {
            "AUTO_IMAGE_LIMIT": "lots",
            "MAX_IMAGES_PER_SCAN": "-4",
            "DEFAULT_IMAGE_PROVIDER": "midjourney",
            "IMAGE_TIMEOUT_SECONDS": "soon",
            "WORKER_CONCURRENCY": "0",
        }
    )
    assert cfg.auto_image_limit == 0
    assert cfg.max_images_per_scan == 0
    assert cfg.default_image_provider == ImageProvider.OPENAI
    assert cfg.image_timeout_seconds == PipelineConfig.image_timeout_seconds
    assert cfg.worker_concurrency == 1


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, ImageProvider.OPENAI),
        ("", ImageProvider.OPENAI),
        ("openai", ImageProvider.OPENAI),
        (" Nano_Banana ", ImageProvider.NANO_BANANA),
        ("dall-e-9000", ImageProvider.OPENAI),
    ],
)
def test_resolve_provider(value, expected):
    assert PipelineConfig().resolve_provider(value) == expected


def test_resolve_provider_uses_configured_default():
    cfg = PipelineConfig(default_image_provider=ImageProvider.NANO_BANANA)
    assert cfg.resolve_provider("unknown") == ImageProvider.NANO_BANANA
