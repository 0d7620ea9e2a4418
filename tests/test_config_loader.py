"""
Tests for ConfigLoader: bootstrap, environment loading and engine settings.
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from src.db.database_service import DatabaseService
from src.utils.config_loader import ALL_SETTINGS, ConfigLoader, get_env_float, get_env_int


class TestConfigLoader(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_service = DatabaseService(str(Path(self.temp_dir) / 'test_database.db'))
        self.env = patch.dict(os.environ, {'DATA_DIR': self.temp_dir}, clear=True)
        self.env.start()

    def tearDown(self):
        self.env.stop()
        self.db_service.db_manager.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_bootstrap_populates_empty_table(self):
        os.environ['TRANSCRIPTION_MODEL'] = 'small.en'

        ConfigLoader.bootstrap_config(self.db_service)

        settings = self.db_service.get_all_settings()
        self.assertEqual(set(settings), set(ALL_SETTINGS))
        self.assertEqual(settings['TRANSCRIPTION_MODEL'], 'small.en')
        self.assertEqual(settings['TRANSCRIPTION_BACKEND'], 'auto')
        self.assertEqual(settings['MODELS_DIR'], '')

    def test_bootstrap_leaves_existing_settings_alone(self):
        self.db_service.set_setting('LOG_LEVEL', 'DEBUG')

        ConfigLoader.bootstrap_config(self.db_service)

        self.assertEqual(self.db_service.get_all_settings(), {'LOG_LEVEL': 'DEBUG'})

    def test_load_settings_skips_data_dir_and_empty_values(self):
        self.db_service.set_setting('DATA_DIR', '/somewhere/else')
        self.db_service.set_setting('MODELS_DIR', '')
        self.db_service.set_setting('TRANSCRIPTION_LANGUAGE', 'de')
        os.environ['MODELS_DIR'] = '/mnt/models'

        ConfigLoader.load_settings(self.db_service)

        self.assertEqual(os.environ['DATA_DIR'], self.temp_dir)
        self.assertEqual(os.environ['MODELS_DIR'], '/mnt/models')
        self.assertEqual(os.environ['TRANSCRIPTION_LANGUAGE'], 'de')

    def test_engine_setting_precedence(self):
        self.assertEqual(ConfigLoader.get_engine_setting(self.db_service, 'TRANSCRIPTION_MODEL'), 'base.en')

        os.environ['TRANSCRIPTION_MODEL'] = 'tiny.en'
        self.assertEqual(ConfigLoader.get_engine_setting(self.db_service, 'TRANSCRIPTION_MODEL'), 'tiny.en')

        self.db_service.set_setting('TRANSCRIPTION_MODEL', ' medium.en ')
        self.assertEqual(ConfigLoader.get_engine_setting(self.db_service, 'TRANSCRIPTION_MODEL'), 'medium.en')
        self.assertEqual(ConfigLoader.get_engine_setting(None, 'TRANSCRIPTION_MODEL'), 'tiny.en')

    def test_update_engine_settings_reports_changes(self):
        changed = ConfigLoader.update_engine_settings(self.db_service, {
            'TRANSCRIPTION_BACKEND': 'cpu',
            'TRANSCRIPTION_MODEL': 'base.en',
        })

        self.assertEqual(changed, {'TRANSCRIPTION_BACKEND': 'cpu'})
        self.assertEqual(self.db_service.get_setting('TRANSCRIPTION_BACKEND'), 'cpu')
        self.assertEqual(os.environ['TRANSCRIPTION_BACKEND'], 'cpu')
        self.assertEqual(ConfigLoader.update_engine_settings(self.db_service, {'TRANSCRIPTION_BACKEND': 'cpu'}), {})

    def test_update_engine_settings_rejects_bad_input(self):
        with self.assertRaises(ValueError):
            ConfigLoader.update_engine_settings(self.db_service, {'LOG_LEVEL': 'DEBUG'})
        with self.assertRaises(ValueError):
            ConfigLoader.update_engine_settings(self.db_service, {'TRANSCRIPTION_BACKEND': 'opencl'})
        with self.assertRaises(ValueError):
            ConfigLoader.update_engine_settings(self.db_service, {'TRANSCRIPTION_MODEL': '  '})
        self.assertIsNone(self.db_service.get_setting('TRANSCRIPTION_BACKEND'))

    def test_env_number_helpers(self):
        os.environ['ALIGNMENT_MATCH_THRESHOLD'] = '0.85'
        os.environ['WHISPER_CPU_THREADS'] = 'lots'
        os.environ['DOCUMENT_MIN_TEXT_CHARS'] = ''

        self.assertEqual(get_env_float('ALIGNMENT_MATCH_THRESHOLD', 0.7), 0.85)
        self.assertEqual(get_env_int('WHISPER_CPU_THREADS', 4), 4)
        self.assertEqual(get_env_int('DOCUMENT_MIN_TEXT_CHARS', 100), 100)
        self.assertEqual(get_env_float('MISSING_KEY', 1.5), 1.5)


if __name__ == '__main__':
    unittest.main()
