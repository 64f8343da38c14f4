"""
CLI wiring tests.
"""

from unittest.mock import patch

import pytest

import main


class TestParseArgs:

    def test_run_source(self):
        args = main.parse_args(["run", "playstore"])
        assert (args.command, args.source) == ("run", "playstore")

    def test_unknown_source_rejected(self):
        with pytest.raises(SystemExit):
            main.parse_args(["run", "twitter"])

    def test_history_limit(self):
        assert main.parse_args(["history", "--limit", "5"]).limit == 5


class TestEnabledSources:

    def test_marketplaces_need_app_ids(self, test_settings):
        without = test_settings.model_copy(update={"playstore_app_id": None, "appstore_app_id": None})
        with patch.object(main, "settings", without):
            assert main.enabled_sources() == ["reddit"]
        with patch.object(main, "settings", test_settings):
            assert main.enabled_sources() == ["reddit", "playstore", "appstore"]

    def test_collectors_share_governor_and_sessions(self, store, governor):
        collectors = main.build_collectors(store, governor, sessions=object())
        assert set(collectors) == {"reddit", "playstore", "appstore"}
        assert len({id(c.governor) for c in collectors.values()}) == 1
