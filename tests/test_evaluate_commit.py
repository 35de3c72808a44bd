import dataclasses
import logging
import math

import numpy as np
import pytest

from photogas_model import GasEdge, NonFiniteResultError, PhotoGasSensorModel, SensorState


def test_first_evaluation_seeds_initial_state(model):
    ev = model.evaluate(0.0, 0.0, 0.0, 1.0)
    assert ev.diagnostics.dt == 0.0
    assert ev.state.start_time == 0.0
    assert ev.state.latch.gain == model.gas.gain_on
    assert ev.state.latch.tp1 == model.gas.t_irr_of
    assert ev.diagnostics.tp2 == pytest.approx(model.gas.t_irr_of / model.gas.r_t1t2)
    assert ev.state.y[model.layout.idx_irr_lp] == 1.0
    assert ev.state.y[model.layout.idx_gas_con] == 0.0
    # evaluate alone commits nothing
    assert model.state is None


def test_initial_state_outputs(model):
    state = model.initial_state(2.5)
    out = state.outputs
    assert state.time == state.start_time == 2.5
    assert out.terminal_current == 0.0
    assert out.irradiance == out.irr_lp == 1.0
    assert out.sensitivity == 1.0
    assert out.r_base == out.r_total == model.base.sensor_r0
    assert state.latch.edge is GasEdge.HELD


def test_initial_state_applied_once_per_run(model, drive):
    drive(model, [(0.0, 2.0, 0.0), (0.1, 2.0, 0.0)])
    ev = model.evaluate(0.2, 2.0, 0.0, 1.0)
    assert ev.state.start_time == 0.0
    assert ev.diagnostics.dt == pytest.approx(0.1)

    model.reset()
    ev = model.evaluate(5.0, 2.0, 0.0, 1.0)
    assert ev.state.start_time == 5.0


def test_terminal_current_is_ohmic(model, drive):
    drive(model, [(0.0, 2.0, 0.5), (0.1, 2.0, 0.5)])
    ev = model.evaluate(0.2, 2.0, 0.5, 3.0)
    assert ev.terminal_current == pytest.approx(3.0 / ev.diagnostics.r_total)
    assert ev.diagnostics.r_total == pytest.approx(
        ev.diagnostics.r_base + ev.diagnostics.r_gas + ev.diagnostics.r_drift
    )


def test_repeated_trials_at_same_time_are_pure(model, drive):
    drive(model, [(0.0, 2.0, 0.0), (0.1, 2.0, 0.0)])
    committed = model.state
    committed_y = committed.y.copy()

    trials = [model.evaluate(0.2, 2.0, 0.3, v) for v in (-1.0, 0.5, 2.0)]

    assert model.state is committed
    np.testing.assert_array_equal(model.state.y, committed_y)
    for ev in trials[1:]:
        np.testing.assert_array_equal(ev.state.y, trials[0].state.y)
        assert ev.state.latch == trials[0].state.latch
    assert trials[2].terminal_current == pytest.approx(4.0 * trials[1].terminal_current)


def test_explicit_previous_state_overrides_committed(model, drive):
    drive(model, [(0.0, 2.0, 0.0)])
    start = model.state
    drive(model, [(0.1, 2.0, 1.0), (0.2, 2.0, 1.0)])

    ev = model.evaluate(0.1, 2.0, 1.0, 1.0, previous_state=start)
    assert ev.diagnostics.dt == pytest.approx(0.1)
    assert ev.diagnostics.edge is GasEdge.RISING


def test_state_vector_is_read_only(model):
    ev = model.evaluate(0.0, 0.0, 0.0, 1.0)
    with pytest.raises(ValueError):
        ev.state.y[0] = 1.0


def test_drift_is_linear_and_increasing(model, drive):
    drive(model, [(0.0, 2.0, 0.0), (0.1, 2.0, 0.0)])
    times = [1.0, 10.0, 100.0, 1000.0]
    drifts = [model.evaluate(t, 2.0, 0.0, 1.0).diagnostics.r_drift for t in times]

    assert np.all(np.diff(drifts) > 0.0)
    for t, r in zip(times, drifts):
        assert r == pytest.approx(model.syn.drift_coef * t)


@pytest.mark.parametrize("field", ["led_voltage", "gas_signal", "terminal_voltage", "temperature"])
@pytest.mark.parametrize("bad", [math.nan, math.inf])
def test_non_finite_inputs_raise(model, field, bad):
    kwargs = dict(time=0.0, led_voltage=2.0, gas_signal=0.0, terminal_voltage=1.0, temperature=300.0)
    kwargs[field] = bad
    with pytest.raises(NonFiniteResultError):
        model.evaluate(**kwargs)


def test_non_positive_temperature_is_clamped(model, drive):
    drive(model, [(0.0, 2.0, 0.0)])
    ev = model.evaluate(0.01, 2.0, 0.0, 1.0, temperature=0.0)
    assert math.isfinite(ev.terminal_current)
    assert "temperature" in ev.diagnostics.guards


def test_time_before_previous_state_rejected(model, drive):
    drive(model, [(0.0, 2.0, 0.0), (1.0, 2.0, 0.0)])
    with pytest.raises(ValueError):
        model.evaluate(0.5, 2.0, 0.0, 1.0)


def test_commit_rejects_non_finite_state(model):
    good = model.initial_state(0.0)
    bad = SensorState(
        time=0.0,
        y=np.array([0.0, math.nan, 0.0, 0.0]),
        latch=good.latch,
        gas_input=0.0,
        start_time=0.0,
        outputs=good.outputs,
    )
    with pytest.raises(NonFiniteResultError):
        model.commit_step(bad)
    assert model.state is None


def test_commit_rejects_going_back_in_time(model, drive):
    early = model.evaluate(0.0, 2.0, 0.0, 1.0).state
    drive(model, [(0.0, 2.0, 0.0), (1.0, 2.0, 0.0)])
    with pytest.raises(ValueError):
        model.commit_step(early)


def test_guard_hits_logged_once_per_name(model, drive, caplog):
    with caplog.at_level(logging.WARNING, logger="photogas_model.core"):
        evs = drive(model, [(0.0, 2.0, 0.0), (0.1, 2.0, 0.0), (0.2, 2.0, 0.0)])

    assert "gas_con" in evs[-1].diagnostics.guards
    messages = [r.getMessage() for r in caplog.records if "'gas_con'" in r.getMessage()]
    assert len(messages) == 1


def test_zero_gas_and_zero_irradiance_evaluate_finite(params):
    params["irradiance"] = dataclasses.replace(params["irradiance"], irr_0=0.0, gain=0.0)
    model = PhotoGasSensorModel(**params)
    evs = [model.evaluate(0.0, 0.0, 0.0, 1.0)]
    model.commit_step(evs[0].state)
    for t in (1.0, 5.0, 50.0):
        ev = model.evaluate(t, 0.0, 0.0, 1.0)
        model.commit_step(ev.state)
        evs.append(ev)

    assert evs[-1].state.y[model.layout.idx_irr_lp] < 1e-30
    for ev in evs:
        assert math.isfinite(ev.terminal_current)
        assert ev.diagnostics.r_total > 0.0
