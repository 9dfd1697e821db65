"""Tests for the compose model, service descriptors and release staging."""

import pytest
import yaml

from deployctl.core.exceptions import ValidationError
from deployctl.deploy.compose import (
    ComposeConfig,
    Project,
    override_filename,
    release_compose,
    render_override,
)
from deployctl.deploy.environment import ReleaseStager
from deployctl.deploy.service import BuildSpec, PlacementConstraint, Service, services_from_compose


class TestComposeConfig:
    """Tests for compose file normalisation."""

    def test_short_forms(self):
        config = ComposeConfig.model_validate({
            "services": {
                "web": {
                    "build": "./web",
                    "depends_on": {"db": {"condition": "service_healthy"}},
                    "env_file": ".env",
                    "labels": ["tier=front", "team = shop"],
                },
                "db": None,
            }
        })
        web = config.services["web"]
        assert web.build.context == "./web"
        assert web.depends_on == ["db"]
        assert web.env_file == [".env"]
        assert web.labels == {"tier": "front", "team": "shop"}
        assert config.services["db"].image is None

    def test_long_env_file_form(self):
        config = ComposeConfig.model_validate({
            "services": {"web": {"image": "web", "env_file": [{"path": ".env", "required": True}, "extra.env"]}}
        })
        assert config.services["web"].env_file == [".env", "extra.env"]

    def test_unknown_keys_kept(self):
        config = ComposeConfig.model_validate({"services": {"web": {"image": "web", "ports": ["80:80"]}}})
        assert config.services["web"].model_extra["ports"] == ["80:80"]


class TestProject:
    """Tests for Project.load."""

    def test_load(self, project, project_dir):
        assert project.name == "shop"
        assert project.base_dir == project_dir
        assert list(project.config.services) == ["db", "web"]
        assert list(project.templates) == ["web"]

    def test_name_defaults_to_directory(self, tmp_path):
        app = tmp_path / "storefront"
        app.mkdir()
        (app / "docker-compose.yml").write_text("services:\n  web:\n    image: web\n")
        assert Project.load(app / "docker-compose.yml").name == "storefront"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            Project.load(tmp_path / "docker-compose.yml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "docker-compose.yml"
        path.write_text("services: [\n")
        with pytest.raises(ValidationError, match="invalid YAML"):
            Project.load(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "docker-compose.yml"
        path.write_text("- web\n")
        with pytest.raises(ValidationError, match="mapping"):
            Project.load(path)


class TestService:
    """Tests for Service descriptors."""

    def test_from_compose(self, project):
        db, web = services_from_compose(project.config)
        assert db.build is None
        assert web.build.context == "."
        assert web.depends_on == ["db"]
        assert web.env_files == [".env.web"]
        assert web.has_container

    def test_prebuilt_image_used_as_declared(self):
        assert Service("db", image="postgres:16").image_for("v2", "registry.example.com") == "postgres:16"

    def test_built_image_tagged_with_version(self):
        service = Service("web", image="shop/web:latest", build=BuildSpec())
        assert service.image_for("v2") == "shop/web:v2"
        assert service.image_for("v2", "registry.example.com/") == "registry.example.com/shop/web:v2"

    def test_built_image_without_name(self):
        service = Service("web", build=BuildSpec())
        assert service.image_for("v2", "localhost:5000") == "localhost:5000/web:v2"

    def test_registry_port_not_taken_for_tag(self):
        service = Service("web", image="localhost:5000/web", build=BuildSpec())
        assert service.image_for("v2") == "localhost:5000/web:v2"

    def test_no_container(self):
        assert not Service("meta").has_container

    def test_healthcheck_flag(self):
        config = ComposeConfig.model_validate({
            "services": {
                "a": {"image": "a", "healthcheck": {"test": ["CMD", "true"]}},
                "b": {"image": "b", "healthcheck": {"disable": True}},
            }
        })
        a, b = services_from_compose(config)
        assert a.has_healthcheck
        assert not b.has_healthcheck


class TestPlacementConstraint:
    """Tests for placement labels."""

    def test_unconstrained(self):
        placement = PlacementConstraint.from_labels({})
        assert not placement.is_constrained
        assert placement.targets(["a", "b"]) == ["a", "b"]

    def test_single_and_multiple_hosts(self):
        placement = PlacementConstraint.from_labels({
            "deployctl.placement.host": "b",
            "deployctl.placement.hosts": "c, a",
        })
        assert placement.allowed() == ["b", "c", "a"]
        assert placement.targets(["a", "b", "c", "d"]) == ["a", "b", "c"]

    def test_unknown_host(self):
        placement = PlacementConstraint(host="z")
        with pytest.raises(ValidationError, match="unknown host"):
            placement.validate("db", ["a", "b"])


class TestReleaseDocuments:
    """Tests for the files generated per release."""

    def test_release_compose(self, project):
        document = release_compose(project.raw, {"web": ["env/.env.web"]})
        assert "build" not in document["services"]["web"]
        assert document["services"]["web"]["env_file"] == ["env/.env.web"]
        assert "env_file" not in document["services"]["db"]
        assert "build" in project.raw["services"]["web"]

    def test_render_override(self, project):
        override = render_override(services_from_compose(project.config), "v3")
        assert override == {
            "services": {
                "db": {"container_name": "db-v3", "hostname": "db-v3", "image": "postgres:16"},
                "web": {
                    "container_name": "web-v3",
                    "hostname": "web-v3",
                    "image": "registry.example.com/shop/web:v3",
                },
            }
        }

    def test_override_filename(self):
        assert override_filename("v3") == "docker-compose.override.v3.yml"


class TestReleaseStager:
    """Tests for ReleaseStager."""

    @pytest.fixture
    def stager(self, fs, tmp_path, project) -> ReleaseStager:
        return ReleaseStager(fs, str(tmp_path / "work"), project)

    def test_plan_environment(self, stager, project, project_dir):
        _, web = services_from_compose(project.config)
        uploads, staged = stager.plan_environment([web])
        assert uploads == {".env.web": project_dir / ".env.web"}
        assert staged == {"web": ["env/.env.web"]}

    def test_nested_env_file_names_flattened(self, stager, project_dir):
        (project_dir / "config").mkdir()
        (project_dir / "config" / "web.env").write_text("A=1\n")
        service = Service("web", image="web", env_files=["./config/web.env"])
        uploads, staged = stager.plan_environment([service])
        assert list(uploads) == ["config_web.env"]
        assert staged == {"web": ["env/config_web.env"]}

    def test_missing_env_file(self, stager):
        service = Service("web", image="web", env_files=[".env.missing"])
        with pytest.raises(ValidationError, match="not found"):
            stager.plan_environment([service])

    @pytest.mark.asyncio
    async def test_stage_and_remove(self, stager, tmp_path, project):
        services = services_from_compose(project.config)
        uploads, env_files = stager.plan_environment(services)
        await stager.stage_environment("v1", uploads)
        files = await stager.stage_files("v1", env_files, render_override(services, "v1"))

        release = tmp_path / "work" / "releases" / "v1"
        assert files == [str(release / "docker-compose.yml"), str(release / override_filename("v1"))]
        assert (release / "env" / ".env.web").read_text() == "DATABASE_URL=postgres://db/shop\n"
        compose = yaml.safe_load((release / "docker-compose.yml").read_text())
        assert compose["services"]["web"]["env_file"] == ["env/.env.web"]

        await stager.remove_release("v1")
        assert not release.exists()
