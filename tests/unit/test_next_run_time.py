from datetime import datetime

import pytz

from pipewright.models import CronTrigger, Pipeline
from pipewright.scheduler import next_run_time

# 2023-11-14 22:13:20 UTC
NOW = 1_700_000_000_000


def _pipeline(spec, timezone="UTC", active=True):
    return Pipeline(name="nightly", is_activate=active, cron_trigger=CronTrigger(spec=spec, timezone=timezone))


def _local(ms, timezone):
    return datetime.fromtimestamp(ms / 1000, pytz.timezone(timezone))


def test_next_fire_time_is_after_now():
    fire = next_run_time(_pipeline("*/5 * * * *"), NOW)

    assert fire == NOW + 100_000


def test_timezone_is_honoured():
    fire = next_run_time(_pipeline("0 2 * * *", timezone="Asia/Shanghai"), NOW)

    local = _local(fire, "Asia/Shanghai")
    assert (local.hour, local.minute) == (2, 0)
    assert fire > NOW
    assert fire - NOW <= 24 * 3600 * 1000


def test_exact_fire_time_moves_to_the_following_one():
    fire = next_run_time(_pipeline("*/5 * * * *"), NOW)

    assert next_run_time(_pipeline("*/5 * * * *"), fire) == fire + 300_000


def test_no_next_run_time():
    assert next_run_time(_pipeline("*/5 * * * *", active=False), NOW) == 0
    assert next_run_time(_pipeline(""), NOW) == 0
    assert next_run_time(_pipeline("not a cron"), NOW) == 0
    assert next_run_time(_pipeline("*/5 * * * *", timezone="Mars/Olympus"), NOW) == 0
