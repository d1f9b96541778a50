import tempfile
import unittest
from pathlib import Path


class TestSettings(unittest.TestCase):
    def test_missing_file_gives_defaults(self) -> None:
        from autoresume.kernel.settings import Settings, load_settings

        with tempfile.TemporaryDirectory() as td:
            s = load_settings(Path(td))
        self.assertEqual(s, Settings())
        self.assertEqual(s.resume_prompt, "continue")
        self.assertEqual(s.resume.stale_threshold_ms, 2 * 60 * 60 * 1000)

    def test_values_are_clamped(self) -> None:
        from autoresume.kernel.settings import settings_from_dict

        s = settings_from_dict(
            {
                "check_interval_seconds": "abc",
                "log_level": "WARN",
                "resume": {
                    "max_retries": 99,
                    "stale_threshold_sec": 5,
                    "verification_window_sec": 1,
                    "retry_base_delay_sec": 100,
                    "retry_max_delay_sec": 10,
                    "post_reset_delay_sec": -3,
                },
                "delivery": {"tier_timeout_sec": 1000},
                "analytics": {"retention_days": 0},
            }
        )
        self.assertEqual(s.check_interval_seconds, 5)
        self.assertEqual(s.log_level, "warning")
        self.assertEqual(s.resume.max_retries, 10)
        self.assertEqual(s.resume.stale_threshold_sec, 60)
        self.assertEqual(s.resume.verification_window_sec, 10)
        self.assertEqual(s.resume.retry_base_delay_sec, 100.0)
        self.assertEqual(s.resume.retry_max_delay_sec, 100.0)
        self.assertEqual(s.resume.post_reset_delay_sec, 0)
        self.assertEqual(s.delivery.tier_timeout_sec, 60.0)
        self.assertEqual(s.analytics.retention_days, 1)

    def test_unknown_log_level_falls_back(self) -> None:
        from autoresume.kernel.settings import settings_from_dict

        self.assertEqual(settings_from_dict({"log_level": "verbose"}).log_level, "info")
        self.assertEqual(settings_from_dict({"log_level": "DEBUG"}).log_level, "debug")

    def test_loose_booleans(self) -> None:
        from autoresume.kernel.settings import settings_from_dict

        s = settings_from_dict(
            {
                "notifications": {"enabled": "false"},
                "plugins": {"enabled": "yes"},
                "analytics": {"enabled": "maybe"},
                "resume": {"retry_on_no_targets": 0},
            }
        )
        self.assertFalse(s.notifications.enabled)
        self.assertTrue(s.plugins.enabled)
        self.assertTrue(s.analytics.enabled)
        self.assertFalse(s.resume.retry_on_no_targets)

    def test_sections_of_wrong_type_are_ignored(self) -> None:
        from autoresume.kernel.settings import Settings, settings_from_dict

        s = settings_from_dict({"resume": ["nope"], "delivery": "x", "resume_prompt": {"a": 1}})
        self.assertEqual(s, Settings())

    def test_save_and_load_roundtrip(self) -> None:
        from autoresume.kernel.settings import (
            DeliverySettings,
            PluginSettings,
            Settings,
            load_settings,
            save_settings,
            settings_path,
        )

        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            s = Settings(
                resume_prompt="please continue",
                menu_selection="2",
                delivery=DeliverySettings(transcripts_dir=str(home / "transcripts")),
                plugins=PluginSettings(enabled=True, directory=str(home / "plug")),
            )
            p = save_settings(s, home)
            self.assertEqual(p, settings_path(home))
            self.assertTrue(p.exists())

            loaded = load_settings(home)
            self.assertEqual(loaded, s)
            self.assertEqual(loaded.plugins.plugin_dir(home), home / "plug")

    def test_broken_yaml_gives_defaults(self) -> None:
        from autoresume.kernel.settings import Settings, load_settings, settings_path

        with tempfile.TemporaryDirectory() as td:
            home = Path(td)
            settings_path(home).write_text("resume: [unclosed\n", encoding="utf-8")
            self.assertEqual(load_settings(home), Settings())

    def test_default_plugin_dir_is_under_home(self) -> None:
        from autoresume.kernel.settings import PluginSettings

        home = Path("/tmp/autoresume-home")
        self.assertEqual(PluginSettings().plugin_dir(home), home / "plugins")


if __name__ == "__main__":
    unittest.main()
