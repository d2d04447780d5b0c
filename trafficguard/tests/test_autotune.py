import pytest

from trafficguard.tuning.autotune import AutoTuner, Direction, Recommendation
from trafficguard.tuning.thresholds import RULE_BOT, Sensitivity, ThresholdTable

RULE = "xss-attack"


@pytest.fixture
def tuner(thresholds, clock):
    return AutoTuner(thresholds, min_triggers=10, clock=clock)


def _triggers(tuner, n, blocked=True, rule=RULE):
    for _ in range(n):
        assert tuner.record_trigger(rule, blocked)


def _snapshot(tuner, rule=RULE):
    p = tuner.performance(rule)
    return p.false_positives, p.true_positives, p.accuracy


def test_unknown_rule_is_ignored(tuner):
    assert tuner.record_trigger("nope", True) is False
    assert tuner.report_false_positive("nope", "s", "/") is None
    assert tuner.adjust_rule_threshold("nope", Direction.INCREASE_TOLERANCE) is None


def test_report_then_reject_restores_counts_exactly(tuner):
    _triggers(tuner, 20)
    before = _snapshot(tuner)
    rid = tuner.report_false_positive(RULE, "s", "/search", "Mozilla/5.0", reason="customer")
    assert _snapshot(tuner) == (1, 19, 95.0)
    assert tuner.verify_false_positive(rid, False)
    assert _snapshot(tuner) == before == (0, 20, 100.0)
    # a report can only be reviewed once
    assert tuner.verify_false_positive(rid, False) is False
    assert _snapshot(tuner) == before


def test_report_then_reject_without_true_positives(tuner):
    _triggers(tuner, 20, blocked=False)
    before = _snapshot(tuner)
    rid = tuner.report_false_positive(RULE, "s", "/")
    assert tuner.verify_false_positive(rid, False)
    assert _snapshot(tuner) == before


def test_confirmed_report_keeps_the_false_positive(tuner):
    _triggers(tuner, 20)
    rid = tuner.report_false_positive(RULE, "s", "/")
    assert tuner.verify_false_positive(rid, True)
    assert _snapshot(tuner)[0] == 1
    report = tuner.false_positive_reports(RULE)[0]
    assert report.verified and report.reviewed


@pytest.mark.parametrize("fps,expected", [
    (0, Recommendation.KEEP),
    (2, Recommendation.REVIEW),
    (4, Recommendation.ADJUST_THRESHOLD),
    (7, Recommendation.DISABLE),
])
def test_recommendation_bands(thresholds, clock, fps, expected):
    tuner = AutoTuner(thresholds, enabled=False, clock=clock)
    for _ in range(fps):
        tuner.report_false_positive(RULE, "s", "/")
    _triggers(tuner, 20, blocked=False)
    assert tuner.performance(RULE).recommendation is expected


def test_hourly_sweep_moves_one_step_toward_low(tuner):
    # reports land before the triggers, so nothing is tuned on the way in
    for _ in range(4):
        tuner.report_false_positive(RULE, "s", "/")
    _triggers(tuner, 20, blocked=False)
    assert tuner.performance(RULE).recommendation is Recommendation.ADJUST_THRESHOLD
    assert tuner.threshold(RULE).sensitivity is Sensitivity.MEDIUM

    report = tuner.run_auto_tune()
    assert report.tuned == 1
    th = tuner.threshold(RULE)
    assert th.sensitivity is Sensitivity.LOW
    assert th.anomaly_score == 60
    assert th.max_false_positive_rate == 7
    assert [r.rule_id for r in report.recommendations] == [RULE]


def test_disable_recommendation_is_surfaced_not_applied(tuner):
    for _ in range(7):
        tuner.report_false_positive(RULE, "s", "/")
    _triggers(tuner, 20, blocked=False)
    assert tuner.performance(RULE).recommendation is Recommendation.DISABLE
    report = tuner.run_auto_tune()
    assert report.tuned == 0
    assert report.recommendations[0].recommendation is Recommendation.DISABLE
    assert tuner.threshold(RULE).sensitivity is Sensitivity.MEDIUM


def test_report_over_tolerance_tunes_immediately(tuner):
    _triggers(tuner, 20)
    tuner.report_false_positive(RULE, "s", "/")  # 5%: at tolerance
    assert tuner.threshold(RULE).sensitivity is Sensitivity.MEDIUM
    tuner.report_false_positive(RULE, "s", "/")  # 10%
    assert tuner.threshold(RULE).sensitivity is Sensitivity.LOW
    assert len(tuner.tuning_history()) == 1


def test_disabled_tuner_only_records(tuner):
    tuner.set_auto_tune(False)
    _triggers(tuner, 10)
    for _ in range(5):
        tuner.report_false_positive(RULE, "s", "/")
    assert tuner.threshold(RULE).sensitivity is Sensitivity.MEDIUM
    assert tuner.run_auto_tune().tuned == 0


def test_adjust_moves_one_step_and_stops_at_the_ends(tuner):
    up = tuner.adjust_rule_threshold(RULE_BOT, "decrease_tolerance")
    assert up.previous_value["sensitivity"] == "medium"
    assert up.new_value["sensitivity"] == "high"
    th = tuner.threshold(RULE_BOT)
    assert (th.anomaly_score, th.max_false_positive_rate) == (40, 4)
    assert tuner.adjust_rule_threshold(RULE_BOT, Direction.DECREASE_TOLERANCE) is None


def test_cutoff_and_fp_rate_are_clamped(clock):
    table = ThresholdTable([RULE])
    tuner = AutoTuner(table, rules=[(RULE, "XSS")], clock=clock)
    th = table.live(RULE)
    th.anomaly_score = 95
    th.max_false_positive_rate = 1.5
    tuner.adjust_rule_threshold(RULE, Direction.INCREASE_TOLERANCE)
    assert table.get(RULE).anomaly_score == 100
    tuner.adjust_rule_threshold(RULE, Direction.DECREASE_TOLERANCE)
    tuner.adjust_rule_threshold(RULE, Direction.DECREASE_TOLERANCE)
    th = table.get(RULE)
    assert th.anomaly_score == 80
    assert th.max_false_positive_rate >= 1


def test_revert_restores_the_previous_snapshot(tuner):
    action = tuner.adjust_rule_threshold(RULE, Direction.INCREASE_TOLERANCE)
    assert tuner.threshold(RULE).sensitivity is Sensitivity.LOW
    assert tuner.revert_action(action.id)
    th = tuner.threshold(RULE)
    assert (th.sensitivity, th.anomaly_score, th.max_false_positive_rate) == (Sensitivity.MEDIUM, 50, 5)
    assert tuner.revert_action(action.id) is False
    assert tuner.tuning_history()[0].reverted


def test_on_action_hook_sees_every_change(tuner):
    seen = []
    tuner.on_action = seen.append
    _triggers(tuner, 20)
    tuner.report_false_positive(RULE, "s", "/")
    tuner.report_false_positive(RULE, "s", "/")
    tuner.adjust_rule_threshold(RULE_BOT, Direction.DECREASE_TOLERANCE)
    assert [a.rule_id for a in seen] == [RULE, RULE_BOT]


def test_stats(tuner, clock):
    _triggers(tuner, 20)
    tuner.report_false_positive(RULE, "s", "/")
    tuner.report_false_positive(RULE, "s", "/")
    st = tuner.stats()
    assert st["total_rules"] == 8
    assert st["false_positives_today"] == 2
    assert st["tuning_actions_today"] == 1
    assert st["rules_needing_review"] == 1
    assert st["auto_tune_enabled"] is True
