import pytest
from pydantic import ValidationError

from webapi_service.core.config import (
    ConfigurationFileError,
    ConfigurationSource,
    ConfigurationValidationError,
    ServiceConfigurationOptions,
    TelemetrySettings,
)
from webapi_service.core.environment import FABRIC_ENV_VAR, RuntimeEnvironmentContext


def test_binds_base_sections(write_config):
    root = write_config()
    source = ConfigurationSource.build(root, "Test", environ={})

    telemetry = source.bind("Telemetry", TelemetrySettings)
    assert telemetry.instrumentation_key == "ikey-1"
    assert telemetry.internal_key == "ikey-internal"

    options = source.bind("ServiceConfigurationOptions", ServiceConfigurationOptions)
    assert options.required_scopes == ("orders.read",)
    assert options.api_name == "orders.api"
    assert options.authority == "https://identity.example.com"
    assert options.is_https is True
    assert options.api_secret.get_secret_value().startswith("orders-api-secret")


def test_environment_file_overrides_base(write_config):
    root = write_config(environment={"serviceconfigurationoptions": {"isHttps": False, "authority": "http://localhost:5000"}})
    source = ConfigurationSource.build(root, "Test", environ={})

    options = source.bind("ServiceConfigurationOptions", ServiceConfigurationOptions)
    assert options.is_https is False
    assert options.authority == "http://localhost:5000"
    # untouched keys survive the merge
    assert options.api_name == "orders.api"
    assert [p.name for p in source.files] == ["appsettings.yaml", "appsettings.Test.yaml"]


def test_environment_file_of_other_environment_is_ignored(write_config):
    root = write_config(environment={"ServiceConfigurationOptions": {"ApiName": "other"}}, env_name="Production")
    source = ConfigurationSource.build(root, "Test", environ={})
    assert source.bind("ServiceConfigurationOptions", ServiceConfigurationOptions).api_name == "orders.api"


def test_environment_variables_override_files(write_config):
    root = write_config()
    source = ConfigurationSource.build(
        root,
        "Test",
        environ={
            "ServiceConfigurationOptions__RequiredScopes": "orders.read,orders.write,orders.read",
            "ServiceConfigurationOptions__IsHttps": "false",
            "Telemetry__InstrumentationKey": "from-env",
            "PATH": "/usr/bin",
        },
    )
    options = source.bind("ServiceConfigurationOptions", ServiceConfigurationOptions)
    assert options.required_scopes == ("orders.read", "orders.write", "orders.read")
    assert options.is_https is False
    assert source.bind("Telemetry", TelemetrySettings).instrumentation_key == "from-env"


@pytest.mark.parametrize(
    "environ",
    [
        {
            "ServiceConfigurationOptions__RequiredScopes": "orders.read",
            "ServiceConfigurationOptions__RequiredScopes__0": "orders.write",
        },
        {
            "ServiceConfigurationOptions__RequiredScopes__0": "orders.write",
            "ServiceConfigurationOptions__RequiredScopes": "orders.read",
        },
    ],
)
def test_conflicting_environment_overrides_are_a_file_error(write_config, environ):
    root = write_config()
    with pytest.raises(ConfigurationFileError, match="RequiredScopes"):
        ConfigurationSource.build(root, "Test", environ=environ)


def test_empty_scopes_are_valid(write_config):
    root = write_config(service={"RequiredScopes": []})
    options = ConfigurationSource.build(root, "Test", environ={}).bind(
        "ServiceConfigurationOptions", ServiceConfigurationOptions
    )
    assert options.required_scopes == ()


def test_missing_required_field_is_a_validation_error(write_config):
    root = write_config(service={"ApiName": None})
    source = ConfigurationSource.build(root, "Test", environ={})

    with pytest.raises(ConfigurationValidationError) as ei:
        source.bind("ServiceConfigurationOptions", ServiceConfigurationOptions)
    assert ei.value.section == "ServiceConfigurationOptions"
    assert ei.value.missing == ["ApiName"]
    assert ei.value.kind == "invalid_section"


def test_missing_api_secret_is_not_a_fault(write_config):
    root = write_config(service={"ApiSecret": None})
    options = ConfigurationSource.build(root, "Test", environ={}).bind(
        "ServiceConfigurationOptions", ServiceConfigurationOptions
    )
    assert options.api_secret.get_secret_value() == ""


def test_unparseable_file_is_a_file_error(tmp_path):
    (tmp_path / "appsettings.yaml").write_text("Telemetry: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigurationFileError) as ei:
        ConfigurationSource.build(tmp_path, "Test", environ={})
    assert ei.value.kind == "malformed_file"


def test_non_mapping_file_is_a_file_error(tmp_path):
    (tmp_path / "appsettings.yaml").write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigurationFileError):
        ConfigurationSource.build(tmp_path, "Test", environ={})


def test_no_files_yields_defaults(tmp_path):
    source = ConfigurationSource.build(tmp_path, "Test", environ={})
    assert source.files == []
    assert source.bind("Telemetry", TelemetrySettings) == TelemetrySettings()
    assert source.get_section("ServiceConfigurationOptions") == {}


def test_bound_options_are_immutable(write_config):
    root = write_config()
    options = ConfigurationSource.build(root, "Test", environ={}).bind(
        "ServiceConfigurationOptions", ServiceConfigurationOptions
    )
    with pytest.raises(ValidationError):
        options.api_name = "changed"


@pytest.mark.parametrize(
    "environ,override,expected",
    [
        ({FABRIC_ENV_VAR: "fabric:/Orders"}, None, True),
        ({FABRIC_ENV_VAR: "  "}, None, False),
        ({}, None, False),
        ({}, True, True),
        ({FABRIC_ENV_VAR: "fabric:/Orders"}, False, False),
    ],
)
def test_runtime_environment_resolution(environ, override, expected):
    assert RuntimeEnvironmentContext.resolve(override=override, environ=environ).is_in_fabric is expected
