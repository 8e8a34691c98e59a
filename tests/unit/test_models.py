from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
import pytest

from pressbox.errors import ValidationError
from pressbox.models import (
    CreateSiteRequest,
    DatabaseEngine,
    SitePaths,
    SiteStatus,
    database_identifier,
    generate_secret,
    slugify_name,
    validate_domain,
)


class TestSlugify:
    @pytest.mark.parametrize(
        ("name", "slug"),
        [
            ("My Blog", "My-Blog"),
            ("  shop_2024 ", "shop_2024"),
            ("../../etc/passwd", "etc-passwd"),
            ("café & bar", "caf-bar"),
        ],
    )
    def test_sanitizes(self, name, slug):
        assert slugify_name(name) == slug

    @pytest.mark.parametrize("name", ["", "   ", "!!!", "con", "NUL", "x" * 65])
    def test_rejects(self, name):
        with pytest.raises(ValidationError) as exc_info:
            slugify_name(name)
        assert exc_info.value.step == "validate"


def test_database_identifier_is_safe_and_bounded():
    assert database_identifier("My-Blog") == "wp_my_blog"
    long_name = database_identifier("a" * 60, suffix="deadbeef")
    assert len(long_name) == 32
    assert long_name.endswith("_deadbeef")


def test_validate_domain():
    assert validate_domain("Blog.Local.") == "blog.local"
    with pytest.raises(ValidationError):
        validate_domain("-bad-.local")
    with pytest.raises(ValidationError):
        validate_domain("spaces here.local")


def test_generate_secret_is_128_bit_hex():
    secret = generate_secret()
    assert len(secret) == 32
    int(secret, 16)
    assert secret != generate_secret()


def test_site_paths_are_derived_from_slug():
    paths = SitePaths.for_site(Path("/home/me/PressBox/sites"), "blog")
    assert paths.root == Path("/home/me/PressBox/sites/blog")
    assert paths.wordpress_dir == paths.root
    assert paths.database_dir == paths.root / "wp-content" / "database"
    assert paths.record_file.name == "pressbox-config.json"


def test_status_activity():
    assert SiteStatus.RUNNING.is_active
    assert SiteStatus.STARTING.is_active
    assert not SiteStatus.STOPPED.is_active
    assert not SiteStatus.ERROR.is_active


def test_engine_networked():
    assert DatabaseEngine.MYSQL.is_networked
    assert not DatabaseEngine.SQLITE.is_networked


class TestSite:
    def test_urls(self, make_site):
        site = make_site(port=8123)
        assert site.url == "http://localhost:8123"
        assert site.admin_url == "http://localhost:8123/wp-admin"

    def test_with_status_sets_error_and_timestamp(self, make_site):
        site = make_site()
        failed = site.with_status(SiteStatus.ERROR, "boom")
        assert failed.status is SiteStatus.ERROR
        assert failed.last_error == "boom"
        assert failed.updated_at >= site.updated_at
        assert site.status is SiteStatus.STOPPED

    def test_root_password_is_never_serialized(self, make_site):
        site = make_site()
        database = site.database.model_copy(update={"root_password": "r00t"})
        site = site.with_updates(database=database)
        assert "r00t" not in site.model_dump_json()


class TestCreateSiteRequest:
    def test_defaults(self):
        request = CreateSiteRequest(name="Blog")
        assert request.database_engine is DatabaseEngine.MYSQL
        assert request.wordpress_version is None

    @pytest.mark.parametrize("version", ["latest", "6.4", "6.4.2"])
    def test_accepts_versions(self, version):
        request = CreateSiteRequest(name="Blog", wordpress_version=version)
        assert request.wordpress_version == version

    @pytest.mark.parametrize("version", ["6", "nightly", "6.4.2; rm -rf /"])
    def test_rejects_versions(self, version):
        with pytest.raises(PydanticValidationError):
            CreateSiteRequest(name="Blog", wordpress_version=version)

    def test_rejects_short_admin_password(self):
        with pytest.raises(PydanticValidationError):
            CreateSiteRequest(name="Blog", admin_password="short")
