import sys

import pytest

from hardware import CommandGateway, HardwareFailure, HardwareGateway, SimulatedGateway

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell commands")


def test_command_success():
    CommandGateway("test -n {machine_id}").start_cycle("M1")


def test_command_non_zero_exit_is_failure():
    with pytest.raises(HardwareFailure, match="exited 3"):
        CommandGateway("echo jammed >&2; exit 3").start_cycle("M1")


def test_command_timeout_is_failure():
    with pytest.raises(HardwareFailure, match="timed out"):
        CommandGateway("sleep 5", timeout_seconds=0.2).start_cycle("M1")


def test_machine_id_is_quoted():
    # A hostile id must reach the command as a single argument.
    CommandGateway('test "$(printf %s {machine_id})" = "a; exit 1"').start_cycle("a; exit 1")


def test_simulated_gateway_records_calls():
    gateway = SimulatedGateway(failing={"M2"})
    gateway.start_cycle("M1")
    with pytest.raises(HardwareFailure):
        gateway.start_cycle("M2")
    assert gateway.calls == ["M1", "M2"]


def test_bad_template_is_failure():
    gateway = CommandGateway("""curl -d '{"id": "{machine_id}"}' http://localhost""")
    with pytest.raises(HardwareFailure, match="bad hardware_command template"):
        gateway.start_cycle("M1")


def test_non_utf8_output_is_failure():
    with pytest.raises(HardwareFailure, match="exited 2"):
        CommandGateway(r"printf '\377\376' >&2; exit 2").start_cycle("M1")


def test_gateway_interface_is_abstract():
    with pytest.raises(TypeError):
        HardwareGateway()
