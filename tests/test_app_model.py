"""Tests for the observable model objects and the per-channel time series."""

import numpy as np
import pytest

from controller.app_model import AppModel, ServoChannel, ServoCollection, GlobalVariable
from lib.protocol import GlobalVar


@pytest.fixture
def channel(qapp):
    return ServoChannel(0)


def test_setter_emits_once_per_change(channel):
    seen = []
    channel.property_changed.connect(seen.append)

    channel.p = 2.5
    channel.p = 2.5
    channel.set_point = 90.0

    assert seen == ["p", "set_point"]
    assert channel.p == 2.5


def test_channel_defaults(channel):
    assert channel.servo_id == 0
    assert channel.d_lambda == 1.0
    assert channel.input_min == 1.0
    assert channel.input_max == 0.0
    assert channel.time_series() == []


def test_time_series_is_pruned_to_ten_seconds(channel):
    for t in range(16):
        channel.record_time_point(float(t))

    assert channel.times[0] == 5.0
    assert channel.times[-1] == 15.0
    assert len(channel.times) == len(channel.set_points) == len(channel.inputs) == len(channel.outputs) == 11


def test_record_uses_current_values(channel):
    recorded = []
    channel.time_point_recorded.connect(lambda: recorded.append(True))

    channel.set_point = 45.0
    channel.input = 44.0
    channel.output = 1.5
    channel.record_time_point(0.25)

    assert recorded == [True]
    assert channel.set_points == [45.0]
    assert channel.inputs == [44.0]
    assert channel.outputs == [1.5]


def test_time_going_backwards_restarts_series(channel):
    channel.record_time_point(3.0)
    channel.record_time_point(4.0)
    channel.record_time_point(0.5)
    assert channel.times == [0.5]


def test_time_series_arrays(channel):
    channel.input = 1.0
    channel.record_time_point(0.0)
    channel.input = 2.0
    channel.record_time_point(0.1)

    series = dict((name, (x, y)) for name, x, y in channel.time_series())
    assert set(series) == {"SetPoint", "Input", "Output"}
    x, y = series["Input"]
    np.testing.assert_allclose(x, [0.0, 0.1])
    np.testing.assert_allclose(y, [1.0, 2.0])


def test_clear_time_series(channel):
    channel.record_time_point(1.0)
    channel.clear_time_series()
    assert channel.times == [] and channel.outputs == []


def test_collection_reset_reports_removed_and_added(qapp):
    col = ServoCollection()
    added, removed = [], []
    col.items_added.connect(added.append)
    col.items_removed.connect(removed.append)

    col.reset(2)
    first = list(col)
    col.reset(3)

    assert len(col) == 3
    assert [s.servo_id for s in col] == [0, 1, 2]
    assert removed == [first]
    assert [len(batch) for batch in added] == [2, 3]


def test_collection_append_requires_matching_id(qapp):
    col = ServoCollection()
    col.append(ServoChannel(0))
    with pytest.raises(ValueError):
        col.append(ServoChannel(5))
    assert len(col) == 1


def test_collection_reset_to_zero(qapp):
    col = ServoCollection()
    col.reset(2)
    col.reset(0)
    assert len(col) == 0


def test_global_variable_value(qapp):
    var = GlobalVariable(GlobalVar.SERVO_MAX_ANGLE, 180.0)
    seen = []
    var.property_changed.connect(seen.append)
    var.value = 180.0
    var.value = 170.0
    assert seen == ["value"]
    assert var.variable is GlobalVar.SERVO_MAX_ANGLE


def test_app_model_defaults(qapp):
    model = AppModel()
    assert model.connected_port is None
    assert model.connected is False
    assert model.pid_enabled is False
    assert model.poll_pid_data is True
    assert len(model.servos) == 0
    assert GlobalVar.ANALOG_INPUT_RANGE not in model.global_vars
    assert set(model.global_vars) == set(GlobalVar) - {GlobalVar.ANALOG_INPUT_RANGE}


def test_app_model_property_changed(qapp):
    model = AppModel()
    seen = []
    model.property_changed.connect(seen.append)
    model.connected_port = "COM3"
    model.connected_port = "COM3"
    model.delta_time = 0.01
    assert seen == ["connected_port", "delta_time"]
