import pytest

from photogas_model import (
    BaseResistanceParams,
    GasDynamicsParams,
    IrradianceParams,
    LedParams,
    PhotoGasSensorModel,
    SensitivityParams,
    SynthesisParams,
)


@pytest.fixture
def params():
    return {
        "led": LedParams(r_s=10.0, r_p=1.0e6, c_p=1.0e-9, i_s=1.0e-18, n=2.0),
        "irradiance": IrradianceParams(tp=0.5, gain=1.0, irr_0=1.0, irr_m=1000.0),
        "base": BaseResistanceParams(sensor_r0=1.0e5, alpha=1.0, beta=1.0),
        "gas": GasDynamicsParams(
            gain_on=1.0,
            gain_off=0.8,
            r_t1t2=5.0,
            r_onoff=3.0,
            t_irr_m=0.5,
            t_irr_of=20.0,
        ),
        "sensitivity": SensitivityParams(irr_s=0.1, irr_o=5.0, std=1.0),
        "synthesis": SynthesisParams(sensor_r=1.0, drift_coef=1.0e-3),
    }


@pytest.fixture
def model(params):
    return PhotoGasSensorModel(**params)


@pytest.fixture
def drive():
    """Evaluate + commit a model over a sequence of (t, led_voltage, gas_signal) points."""

    def _drive(model, points, terminal_voltage=1.0):
        evaluations = []
        for t, v_led, gas in points:
            ev = model.evaluate(t, v_led, gas, terminal_voltage)
            model.commit_step(ev.state)
            evaluations.append(ev)
        return evaluations

    return _drive
