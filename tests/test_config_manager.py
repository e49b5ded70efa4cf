import configparser
import unittest
from pathlib import Path

import pytest

from debrid_namespace.config_manager import ConfigValidator, EngineSettings, load_config, update_config

TEMPLATE = Path(__file__).resolve().parent.parent / "config.ini.template"


class TestConfigValidation(unittest.TestCase):
    def setUp(self):
        self.config = configparser.ConfigParser(interpolation=None)
        self.config['REMOTE'] = {'type': 'realdebrid', 'api_key': 'token'}
        self.config['SORTING'] = {'sort_file': '/tmp/sorting.txt'}
        self.config['SETTINGS'] = {}

    def test_minimal_config_is_valid(self):
        validator = ConfigValidator(self.config)
        self.assertTrue(validator.validate())
        self.assertEqual(validator.errors, [])
        self.assertEqual(validator.warnings, [])

    def test_missing_section(self):
        self.config.remove_section('SORTING')
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())
        self.assertIn("Missing required section: [SORTING]", validator.errors)

    def test_empty_api_key(self):
        self.config['REMOTE']['api_key'] = '  '
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())
        self.assertIn("Option 'api_key' in [REMOTE] is empty", validator.errors)

    def test_unknown_remote_type(self):
        self.config['REMOTE']['type'] = 'alldebrid'
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())
        self.assertTrue(any("Invalid remote type" in e for e in validator.errors))

    def test_out_of_range_values_only_warn(self):
        self.config['SETTINGS']['refresh_interval'] = '5'
        self.config['SETTINGS']['retry_backoff'] = '20'
        validator = ConfigValidator(self.config)
        self.assertTrue(validator.validate())
        self.assertTrue(any('refresh_interval' in w for w in validator.warnings))
        self.assertTrue(any('retry_backoff' in w for w in validator.warnings))

    def test_non_numeric_value(self):
        self.config['SETTINGS']['max_retries'] = 'lots'
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())
        self.assertIn("Option 'max_retries' in [SETTINGS] must be an integer", validator.errors)

    def test_bad_boolean(self):
        self.config['SORTING']['strict_regex'] = 'maybe'
        validator = ConfigValidator(self.config)
        self.assertFalse(validator.validate())
        self.assertIn("Option 'strict_regex' in [SORTING] must be true or false", validator.errors)


class TestEngineSettings(unittest.TestCase):
    def test_defaults_apply(self):
        config = configparser.ConfigParser(interpolation=None)
        config['REMOTE'] = {'type': 'RealDebrid', 'api_key': ' token '}
        config['SORTING'] = {'sort_file': '/data/sorting.txt'}
        settings = EngineSettings.from_config(config)
        self.assertEqual(settings.api_key, 'token')
        self.assertEqual(settings.remote_type, 'realdebrid')
        self.assertEqual(settings.sort_file, Path('/data/sorting.txt'))
        self.assertEqual(settings.refresh_interval, 900)
        self.assertEqual(settings.rule_check_debounce, 5)
        self.assertFalse(settings.strict_regex)
        self.assertFalse(settings.background_refresh)

    def test_values_from_template(self):
        config = configparser.ConfigParser(interpolation=None)
        config.read(TEMPLATE, encoding='utf-8')
        config['REMOTE']['api_key'] = 'token'
        config['SETTINGS']['refresh_interval'] = '600'
        config['SETTINGS']['recovery_poll_delay'] = '0.5'
        config['SORTING']['strict_regex'] = 'yes'
        settings = EngineSettings.from_config(config)
        self.assertEqual(settings.refresh_interval, 600)
        self.assertEqual(settings.recovery_poll_delay, 0.5)
        self.assertTrue(settings.strict_regex)
        self.assertEqual(settings.api_url, "https://api.real-debrid.com/rest/1.0")
        self.assertEqual(settings.sort_file.name, 'sorting.txt')


def test_update_config_creates_missing_file(tmp_path):
    config_path = tmp_path / "config.ini"
    update_config(str(config_path), str(TEMPLATE))
    assert config_path.read_text(encoding='utf-8') == TEMPLATE.read_text(encoding='utf-8')


def test_update_config_adds_new_options_and_keeps_values(tmp_path):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[REMOTE]\ntype = realdebrid\napi_key = secret\n\n[SORTING]\nsort_file = /x/sorting.txt\n",
                           encoding='utf-8')
    update_config(str(config_path), str(TEMPLATE))

    config = load_config(str(config_path))
    assert config['REMOTE']['api_key'] == 'secret'
    assert config['SORTING']['sort_file'] == '/x/sorting.txt'
    assert config.has_option('REMOTE', 'request_timeout')
    assert config.has_option('SETTINGS', 'refresh_interval')
    assert config.has_section('LOGGING')
    assert len(list((tmp_path / "backup").iterdir())) == 1


def test_update_config_without_changes_makes_no_backup(tmp_path):
    config_path = tmp_path / "config.ini"
    update_config(str(config_path), str(TEMPLATE))
    update_config(str(config_path), str(TEMPLATE))
    assert not (tmp_path / "backup").exists()


def test_missing_template_exits(tmp_path):
    with pytest.raises(SystemExit):
        update_config(str(tmp_path / "config.ini"), str(tmp_path / "nope.template"))


def test_load_missing_config_exits(tmp_path):
    with pytest.raises(SystemExit):
        load_config(str(tmp_path / "config.ini"))
