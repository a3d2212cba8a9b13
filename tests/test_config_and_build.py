import json
import os
import sys
import tempfile
import unittest


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from pte.config import load_config, parse_config  # noqa: E402
from pte.dedupe import DedupeStrategy  # noqa: E402
from pte.errors import ConfigurationError  # noqa: E402
from pte.fetchers import GitHubIssuesFetcher, HuggingFaceModelsFetcher  # noqa: E402
from pte.scheduler import build_scheduler  # noqa: E402


def _write(td: str, cfg: object) -> str:
    path = os.path.join(td, "config.json")
    with open(path, "w", encoding="utf-8") as f:
        json.dump(cfg, f, ensure_ascii=False)
    return path


class TestConfigAndBuild(unittest.TestCase):
    def test_load_config_parses_triggers(self) -> None:
        cfg = {
            "poll_interval_seconds": 60,
            "max_workers": 2,
            "state": {"sqlite_path": "./x.sqlite3"},
            "triggers": [
                {
                    "name": "gh",
                    "block": "github",
                    "trigger": "new_issue",
                    "fetcher": "github_issues",
                    "strategy": "timebased",
                    "props": {"repo": "a/b"},
                    "auth_env": "GITHUB_TOKEN",
                },
                {
                    "block": "huggingface",
                    "trigger": "new_model",
                    "fetcher": "huggingface_models",
                    "strategy": "IDENTITY",
                    "props": {"org": "deepseek-ai"},
                    "capacity": 50,
                    "test_sample_size": 2,
                },
            ],
        }
        with tempfile.TemporaryDirectory() as td:
            config = load_config(_write(td, cfg))

        self.assertEqual(config.poll_interval_seconds, 60)
        self.assertEqual(config.max_workers, 2)
        self.assertEqual(config.max_skip_cycles, 8)
        self.assertEqual(config.sqlite_path, "./x.sqlite3")
        gh, hf = config.triggers
        self.assertEqual(gh.name, "gh")
        self.assertIs(gh.strategy, DedupeStrategy.TIMEBASED)
        self.assertEqual(gh.props, {"repo": "a/b"})
        self.assertEqual(gh.auth_env, "GITHUB_TOKEN")
        self.assertEqual(hf.name, "huggingface.new_model")
        self.assertIs(hf.strategy, DedupeStrategy.IDENTITY)
        self.assertEqual(hf.capacity, 50)
        self.assertEqual(hf.test_sample_size, 2)

    def test_invalid_configs_are_rejected(self) -> None:
        base = {"block": "b", "trigger": "t", "fetcher": "github_issues", "strategy": "timebased"}
        bad = [
            [],
            {"triggers": {}},
            {"triggers": [dict(base, strategy="newest")]},
            {"triggers": [dict(base, capacity=0)]},
            {"triggers": [dict(base, test_sample_size="5")]},
            {"triggers": [{k: v for k, v in base.items() if k != "fetcher"}]},
            {"triggers": [dict(base, name="x"), dict(base, name="x")]},
            {"poll_interval_seconds": 0},
        ]
        for raw in bad:
            with self.subTest(raw=raw):
                with self.assertRaises(ConfigurationError):
                    parse_config(raw)

    def test_triggers_sharing_an_instance_key_are_rejected(self) -> None:
        gh = {"name": "gh", "block": "github", "trigger": "t", "fetcher": "github_issues", "props": {"repo": "a/b"}}
        hf = dict(gh, name="hf", fetcher="huggingface_models", strategy="identity")
        with self.assertRaises(ConfigurationError) as ctx:
            parse_config({"triggers": [dict(gh, strategy="timebased"), hf]})
        self.assertIn("instance_key", str(ctx.exception))

        with self.assertRaises(ConfigurationError):
            parse_config({"triggers": [dict(gh, instance_id="same"), dict(hf, props={"org": "o"}, instance_id="same")]})

        config = parse_config({"triggers": [gh, dict(hf, instance_id="hf-a-b")]})
        self.assertEqual([t.name for t in config.triggers], ["gh", "hf"])

    def test_strategy_defaults_to_the_fetcher_recommendation(self) -> None:
        config = parse_config(
            {
                "triggers": [
                    {"name": "gh", "block": "github", "trigger": "new_issue", "fetcher": "github_issues"},
                    {"name": "hf", "block": "huggingface", "trigger": "new_model", "fetcher": "huggingface_models"},
                ]
            }
        )
        self.assertEqual([t.strategy for t in config.triggers], [DedupeStrategy.IDENTITY, DedupeStrategy.IDENTITY])

        with self.assertRaises(ConfigurationError):
            parse_config({"triggers": [{"block": "b", "trigger": "t", "fetcher": "custom"}]})

    def test_unreadable_config_is_configuration_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "config.json")
            with open(path, "w", encoding="utf-8") as f:
                f.write("{not json")
            with self.assertRaises(ConfigurationError):
                load_config(path)
            with self.assertRaises(ConfigurationError):
                load_config(os.path.join(td, "missing.json"))

    def test_build_scheduler_wires_fetchers_and_auth(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = {
                "state": {"sqlite_path": os.path.join(td, "state.sqlite3")},
                "triggers": [
                    {
                        "name": "gh",
                        "block": "github",
                        "trigger": "new_issue",
                        "fetcher": "github_issues",
                        "strategy": "timebased",
                        "props": {"repo": "a/b"},
                        "auth_env": "PTE_TEST_GITHUB_TOKEN",
                    },
                    {
                        "name": "hf",
                        "block": "huggingface",
                        "trigger": "new_model",
                        "fetcher": "huggingface_models",
                        "strategy": "identity",
                        "props": {"org": "o"},
                        "capacity": 3,
                        "test_sample_size": 4,
                    },
                ],
            }
            os.environ["PTE_TEST_GITHUB_TOKEN"] = "t"
            try:
                scheduler = build_scheduler(load_config(_write(td, cfg)))
            finally:
                os.environ.pop("PTE_TEST_GITHUB_TOKEN", None)

        gh = scheduler.binding("gh")
        hf = scheduler.binding("hf")
        self.assertIsInstance(gh.engine.fetcher, GitHubIssuesFetcher)
        self.assertEqual(gh.instance.auth, "t")
        self.assertIsInstance(hf.engine.fetcher, HuggingFaceModelsFetcher)
        self.assertIsNone(hf.instance.auth)
        self.assertEqual(hf.engine.capacity, 3)
        self.assertEqual(hf.test_sample_size, 4)
        with self.assertRaises(ConfigurationError):
            scheduler.binding("missing")

    def test_build_scheduler_rejects_unknown_fetcher(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            config = parse_config(
                {
                    "state": {"sqlite_path": os.path.join(td, "state.sqlite3")},
                    "triggers": [{"block": "b", "trigger": "t", "fetcher": "nope", "strategy": "timebased"}],
                }
            )
            with self.assertRaises(ConfigurationError):
                build_scheduler(config)
