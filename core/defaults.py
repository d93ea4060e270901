"""
Built-in default dataset (legacy shape).

首次启动或加载失败时使用。部分任务保留最老的 {"done": bool} 形式，
由加载时的默认值回填统一升级。
"""
from datetime import datetime
from typing import Any, Dict

from core.codec import dict_to_app_data
from core.models import AppData
from core.normalization import apply_defaults


def build_default_payload() -> Dict[str, Any]:
    return {
        "user": {
            "id": "user_001",
            "name": "Owner",
            "streak": 0,
        },
        "settings": {
            "ai": {"enabled": False},
        },
        "pillars": [
            {
                "id": 1,
                "name": "Websites",
                "description": "Three complete front ends",
                "status": "done",
                "completion": 100,
                "done_definition": {
                    "tech": "All three sites online and responsive",
                    "live": "SEO, analytics and forms working",
                    "battle": "10 users tested and gave feedback",
                },
                "tasks": [
                    {"name": "Final fixes on the main site", "type": "close", "done": True},
                    {"name": "Quiz page works", "type": "close", "done": True},
                    {"name": "Publish the app site", "type": "close", "done": True},
                ],
            },
            {
                "id": 2,
                "name": "Offer",
                "description": "Packages and purchase path",
                "status": "in_progress",
                "completion": 50,
                "done_definition": {
                    "tech": "Packages described with prices and FAQ",
                    "live": "Checkout and payments work",
                    "battle": "One test transaction",
                },
                "tasks": [
                    {"name": "Package descriptions", "type": "build", "done": True},
                    {"name": "Pricing table", "type": "build", "done": True},
                    {"name": "FAQ section", "type": "close", "done": False},
                    {"name": "Test checkout", "type": "close", "done": False},
                ],
            },
            {
                "id": 3,
                "name": "Game",
                "description": "MVP, ranking, lead capture",
                "status": "not_started",
                "completion": 0,
                "done_definition": {
                    "tech": "Game works with a ranking",
                    "live": "Published on the app site",
                    "battle": "10 users, feedback and one iteration",
                },
                "tasks": [
                    {"name": "Backend ranking", "type": "build", "done": False},
                    {"name": "Frontend UI", "type": "build", "done": False},
                    {"name": "Deploy to hosting", "type": "close", "done": False},
                ],
            },
        ],
        "currentFinishSession": None,
        "finishSessionsHistory": [],
        "ideas": [],
    }


def build_default_data(now: datetime) -> AppData:
    return dict_to_app_data(apply_defaults(build_default_payload(), now))
