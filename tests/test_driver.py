"""Tests for vmbuilder.driver module."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from vmbuilder.driver import Driver, connect, libvirt_uri, split_host_port


class TestSplitHostPort:
    @pytest.mark.parametrize(
        "address,expected",
        [
            ("localhost:16509", ("localhost", 16509)),
            ("10.0.0.5:16509", ("10.0.0.5", 16509)),
            ("[::1]:16509", ("::1", 16509)),
        ],
    )
    def test_host_port(self, address, expected):
        assert split_host_port(address) == expected

    @pytest.mark.parametrize(
        "address",
        ["/var/run/libvirt/libvirt-sock", "host:port", "::1:16509", "[::1]", "[]:1", "host:"],
    )
    def test_not_host_port(self, address):
        assert split_host_port(address) is None


class TestLibvirtUri:
    def test_unix_socket(self):
        assert libvirt_uri("/var/run/libvirt/libvirt-sock") == "qemu+unix:///system?socket=/var/run/libvirt/libvirt-sock"

    def test_tcp(self):
        assert libvirt_uri("hv1:16509") == "qemu+tcp://hv1:16509/system"

    def test_tcp_ipv6(self):
        assert libvirt_uri("[fd00::1]:16509") == "qemu+tcp://[fd00::1]:16509/system"

    def test_uri_passes_through(self):
        assert libvirt_uri("qemu+ssh://root@hv1/system") == "qemu+ssh://root@hv1/system"


class TestDriverInterface:
    def test_is_abstract(self):
        with pytest.raises(TypeError):
            Driver()

    def test_mock_satisfies_interface(self, driver_mock):
        assert isinstance(driver_mock, Driver)
        driver_mock.close()
        assert driver_mock.closed

    def test_connect_delegates_to_libvirt_driver(self):
        with patch("vmbuilder.libvirt_driver.connect", return_value="driver") as mock_connect:
            assert connect("/tmp/sock", "virbr0") == "driver"
        mock_connect.assert_called_once_with("/tmp/sock", "virbr0")
