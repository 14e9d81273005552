# =============================================================================
# tests/unit/test_connection_manager.py
# Unit Tests for backend reachability tracking
# =============================================================================

import socket


class TestConnectionManager:

    def test_initial_state_unknown(self):
        from booking_core.offline import ConnectionManager, ConnectionStatus

        manager = ConnectionManager(probe=lambda: True)
        assert manager.status is ConnectionStatus.UNKNOWN

    def test_reachable_backend_is_online(self):
        from booking_core.offline import ConnectionManager, ConnectionStatus

        manager = ConnectionManager(probe=lambda: True)
        state = manager.check_connection()

        assert state.status is ConnectionStatus.ONLINE
        assert manager.is_online
        assert state.last_online is not None

    def test_probe_errors_mean_offline(self):
        from booking_core.offline import ConnectionManager

        def refuse():
            raise ConnectionRefusedError("refused")

        manager = ConnectionManager(probe=refuse)
        manager.check_connection()
        manager.check_connection()

        assert manager.is_offline
        assert manager.state.consecutive_failures == 2
        assert manager.get_status_display()["error"] == "refused"

    def test_callbacks_fire_on_change_only(self):
        from booking_core.offline import ConnectionManager

        seen = []
        reachable = {"value": True}
        manager = ConnectionManager(probe=lambda: reachable["value"])
        manager.register_callback(lambda state: seen.append(state.status.value))

        manager.check_connection()
        manager.check_connection()
        reachable["value"] = False
        manager.check_connection()

        assert seen == ["online", "offline"]

    def test_force_offline(self):
        from booking_core.offline import ConnectionManager

        manager = ConnectionManager(probe=lambda: True)
        manager.check_connection()
        manager.force_offline()

        assert manager.is_offline


class TestTcpProbe:

    def test_no_url_means_local_only(self):
        from booking_core.offline.connection_manager import tcp_probe

        assert tcp_probe(None)() is True

    def test_probe_connects_to_listening_socket(self):
        from booking_core.offline.connection_manager import tcp_probe

        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]
        try:
            assert tcp_probe(f"http://127.0.0.1:{port}", timeout=2)() is True
        finally:
            server.close()
