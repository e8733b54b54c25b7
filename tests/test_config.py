import json

import pytest

from lbsync.core.config import load_mappings, load_settings, parse_listeners, parse_mappings
from lbsync.core.errors import ConfigurationError
from lbsync.models.schemas import Listener

ENV = {
    "DISCOVERY_URL": "http://cs.test",
    "DISCOVERY_TOKEN": "tok",
    "LB_ZONE": "pek3",
    "LB_ACCESS_KEY": "AKID",
    "LB_SECRET_KEY": "secret",
}


def test_defaults():
    settings = load_settings(ENV)
    assert settings.sync_interval_s == 60.0
    assert settings.filter_by_name is True
    assert settings.resolve_nics is False
    assert "destroy" in settings.event_statuses
    assert str(settings.lb_api_url).startswith("https://api.qingcloud.com/iaas")


def test_missing_variables_are_listed():
    env = dict(ENV)
    del env["LB_ZONE"], env["DISCOVERY_TOKEN"]
    with pytest.raises(ConfigurationError, match="DISCOVERY_TOKEN, LB_ZONE"):
        load_settings(env)


def test_overrides():
    settings = load_settings({
        **ENV,
        "EVENT_STATUSES": "die, start destroy",
        "FILTER_BY_NAME": "false",
        "RESOLVE_NICS": "yes",
        "DEBOUNCE_S": "0.5",
        "HTTP_PORT": "9100",
    })
    assert settings.event_statuses == ("die", "start", "destroy")
    assert settings.filter_by_name is False
    assert settings.resolve_nics is True
    assert settings.debounce_s == 0.5
    assert settings.http_port == 9100


@pytest.mark.parametrize("name,value", [("SYNC_INTERVAL_S", "soon"), ("SYNC_INTERVAL_S", "0"), ("DISCOVERY_URL", "nope")])
def test_invalid_values_are_configuration_errors(name, value):
    with pytest.raises(ConfigurationError, match="Invalid configuration"):
        load_settings({**ENV, name: value})


def test_parse_mappings_current_and_legacy_shapes():
    current = parse_mappings({"mappings": [{
        "application": {"instance": "web", "service": "api", "port": 8080, "weight": 3},
        "listeners": [{"listener_id": "lbl-1", "policy_id": "lbp-1"}],
    }]})
    legacy = parse_mappings([{
        "service": {"instance": "web", "name": "api", "port": 8080},
        "lbs": [{"listenerID": "lbl-1"}, {"listener": "lbl-2", "policy": "lbp-2"}],
    }])

    assert current[0].application.weight == 3
    assert current[0].listeners == (Listener(listener_id="lbl-1", policy_id="lbp-1"),)
    assert legacy[0].application.key == "web/api"
    assert [str(x) for x in legacy[0].listeners] == ["lbl-1", "lbl-2:lbp-2"]


@pytest.mark.parametrize("payload", [
    [],
    {"mappings": []},
    [{"application": {"instance": "web", "service": "api", "port": 0}, "listeners": [{"listener_id": "l"}]}],
    [{"application": {"instance": "web", "service": "api", "port": 80}, "listeners": []}],
])
def test_parse_mappings_rejects_bad_documents(payload):
    with pytest.raises(ConfigurationError):
        parse_mappings(payload)


def test_parse_listeners():
    assert parse_listeners("lbl-1:lbp-1  lbl-2") == [
        Listener(listener_id="lbl-1", policy_id="lbp-1"),
        Listener(listener_id="lbl-2"),
    ]


def test_load_mappings_from_file(tmp_path):
    path = tmp_path / "mappings.json"
    path.write_text(json.dumps([
        {"application": {"instance": "web", "service": "api", "port": 8080}, "listeners": [{"listener_id": "lbl-1"}]},
    ]))
    settings = load_settings({**ENV, "MAPPINGS_FILE": str(path)})

    [mapping] = load_mappings(settings, {})

    assert mapping.application.port == 8080


def test_unreadable_or_invalid_mappings_file(tmp_path):
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")

    with pytest.raises(ConfigurationError, match="not valid JSON"):
        load_mappings(load_settings({**ENV, "MAPPINGS_FILE": str(broken)}), {})
    with pytest.raises(ConfigurationError, match="Cannot read"):
        load_mappings(load_settings({**ENV, "MAPPINGS_FILE": str(tmp_path / "missing.json")}), {})


def test_credentials_from_single_config_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "csphere": {"url": "http://cs.file", "token": "file-token"},
        "qingcloud": {"zone": "gd1", "key": "FILEKEY", "secret": "file-secret"},
        "mappings": [{"service": {"instance": "web", "name": "api", "port": 8080}, "lbs": [{"listenerID": "lbl-1"}]}],
    }))

    settings = load_settings({"MAPPINGS_FILE": str(path), "LB_ZONE": "pek3"})
    [mapping] = load_mappings(settings, {})

    assert str(settings.discovery_url).startswith("http://cs.file")
    assert settings.discovery_token == "file-token"
    assert (settings.lb_access_key, settings.lb_secret_key) == ("FILEKEY", "file-secret")
    # environment wins over the file
    assert settings.lb_zone == "pek3"
    assert mapping.application.key == "web/api"


def test_config_file_without_credentials_still_reports_missing(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"csphere": {"url": "http://cs.file"}, "mappings": []}))

    with pytest.raises(ConfigurationError, match="DISCOVERY_TOKEN, LB_ZONE, LB_ACCESS_KEY, LB_SECRET_KEY"):
        load_settings({"MAPPINGS_FILE": str(path)})


def test_single_mapping_from_environment():
    env = {"INSTANCE": "web", "SERVICE": "api", "SERVICE_PORT": "8080", "LB_LISTENERS": "lbl-1:lbp-1 lbl-2"}

    [mapping] = load_mappings(load_settings(ENV), env)

    assert mapping.application.key == "web/api"
    assert [x.listener_id for x in mapping.listeners] == ["lbl-1", "lbl-2"]


def test_no_mapping_source_is_an_error():
    with pytest.raises(ConfigurationError, match="MAPPINGS_FILE"):
        load_mappings(load_settings(ENV), {"INSTANCE": "web"})
    with pytest.raises(ConfigurationError):
        load_mappings(load_settings(ENV), {**dict.fromkeys(["INSTANCE", "SERVICE", "LB_LISTENERS"], "x"), "SERVICE_PORT": "http"})
