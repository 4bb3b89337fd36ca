"""Token-refresh behaviour of the client gateway against mocked HTTP."""

import asyncio

import httpx
import pytest
import respx

from hydration_tracker.client import (
    AuthenticationRequired,
    ClientTokenGateway,
    MemoryTokenStore,
    RefreshFailed,
)

BASE_URL = "https://api.hydration.test"
INTAKE_PATH = "/intake/today"


def _refresh_ok(access_token: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "success": True,
            "message": "Token refreshed",
            "data": {"tokens": {"accessToken": access_token, "refreshToken": "refresh-1"}},
        },
    )


def _unauthorized(code: str = "TOKEN_EXPIRED") -> httpx.Response:
    return httpx.Response(401, json={"success": False, "message": "nope", "error": code})


def _bearer(request: httpx.Request) -> str:
    return request.headers.get("Authorization", "")


class TestSingleRequest:
    async def test_expired_token_refreshed_and_request_replayed(self):
        store = MemoryTokenStore("stale", "refresh-1")

        def intake(request):
            if _bearer(request) == "Bearer fresh":
                return httpx.Response(200, json={"success": True, "data": {"ml": 750}})
            return _unauthorized()

        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            intake_route = router.get(INTAKE_PATH).mock(side_effect=intake)
            refresh_route = router.post("/auth/refresh").mock(return_value=_refresh_ok("fresh"))

            async with ClientTokenGateway(BASE_URL, store) as gateway:
                response = await gateway.get(INTAKE_PATH)

        assert response.status_code == 200
        assert response.json()["data"]["ml"] == 750
        assert intake_route.call_count == 2
        assert refresh_route.call_count == 1
        assert store.get_access_token() == "fresh"
        assert store.get_refresh_token() == "refresh-1"

    async def test_refresh_request_carries_refresh_token(self):
        store = MemoryTokenStore("stale", "refresh-1")
        seen = {}

        def refresh(request):
            seen["body"] = request.content
            return _refresh_ok("fresh")

        def intake(request):
            return httpx.Response(200) if _bearer(request) == "Bearer fresh" else _unauthorized()

        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            router.get(INTAKE_PATH).mock(side_effect=intake)
            router.post("/auth/refresh").mock(side_effect=refresh)
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                await gateway.get(INTAKE_PATH)

        assert b'"refreshToken"' in seen["body"]
        assert b'"refresh-1"' in seen["body"]

    async def test_success_passes_through_without_refresh(self):
        store = MemoryTokenStore("good", "refresh-1")
        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            router.get(INTAKE_PATH).mock(return_value=httpx.Response(200))
            refresh_route = router.post("/auth/refresh").mock(return_value=_refresh_ok("x"))
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                response = await gateway.get(INTAKE_PATH)

        assert response.status_code == 200
        assert not refresh_route.called

    async def test_other_errors_are_not_refreshed(self):
        store = MemoryTokenStore("good", "refresh-1")
        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            router.post("/intake").mock(return_value=httpx.Response(400, json={"success": False}))
            refresh_route = router.post("/auth/refresh").mock(return_value=_refresh_ok("x"))
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                response = await gateway.post("/intake", json={"ml": 250})

        assert response.status_code == 400
        assert not refresh_route.called

    async def test_second_rejection_is_not_retried_again(self):
        store = MemoryTokenStore("stale", "refresh-1")
        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            intake_route = router.get(INTAKE_PATH).mock(return_value=_unauthorized("INVALID_SESSION"))
            refresh_route = router.post("/auth/refresh").mock(return_value=_refresh_ok("fresh"))
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                with pytest.raises(AuthenticationRequired):
                    await gateway.get(INTAKE_PATH)

        assert intake_route.call_count == 2
        assert refresh_route.call_count == 1

    async def test_missing_refresh_token_fails_without_network(self):
        store = MemoryTokenStore("stale", None)
        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            router.get(INTAKE_PATH).mock(return_value=_unauthorized())
            refresh_route = router.post("/auth/refresh").mock(return_value=_refresh_ok("fresh"))
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                with pytest.raises(RefreshFailed):
                    await gateway.get(INTAKE_PATH)
                assert gateway.state.in_flight is False

        assert not refresh_route.called
        assert store.get_access_token() is None

    async def test_rejected_refresh_clears_tokens(self):
        store = MemoryTokenStore("stale", "refresh-1")
        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            router.get(INTAKE_PATH).mock(return_value=_unauthorized())
            router.post("/auth/refresh").mock(return_value=_unauthorized("INVALID_SESSION"))
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                with pytest.raises(RefreshFailed) as exc:
                    await gateway.get(INTAKE_PATH)
                assert gateway.state.in_flight is False
                assert gateway.state.waiters == []

        assert exc.value.status_code == 401
        assert exc.value.error_code == "INVALID_SESSION"
        assert store.get_access_token() is None
        assert store.get_refresh_token() is None

    async def test_network_error_during_refresh(self):
        store = MemoryTokenStore("stale", "refresh-1")
        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            router.get(INTAKE_PATH).mock(return_value=_unauthorized())
            router.post("/auth/refresh").mock(side_effect=httpx.ConnectError("connection refused"))
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                with pytest.raises(RefreshFailed):
                    await gateway.get(INTAKE_PATH)
                assert gateway.state.in_flight is False

        assert store.get_refresh_token() is None

    async def test_refresh_path_401_is_returned_as_is(self):
        store = MemoryTokenStore("stale", "refresh-1")
        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            refresh_route = router.post("/auth/refresh").mock(return_value=_unauthorized("INVALID_SESSION"))
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                response = await gateway.post("/auth/refresh", json={"refreshToken": "refresh-1"})

        assert response.status_code == 401
        assert refresh_route.call_count == 1


class GatedBackend:
    """Async handler that holds the refresh reply until every caller has seen a 401."""

    def __init__(self, callers: int, refresh_response: httpx.Response):
        self.callers = callers
        self.refresh_response = refresh_response
        self.rejected = 0
        self.refresh_calls = 0
        self.replayed = 0
        self.all_rejected = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/refresh":
            self.refresh_calls += 1
            await self.all_rejected.wait()
            return self.refresh_response
        if _bearer(request) == "Bearer fresh":
            self.replayed += 1
            return httpx.Response(200, json={"success": True})
        self.rejected += 1
        if self.rejected == self.callers:
            self.all_rejected.set()
        # Let the other callers reach the server before answering
        await asyncio.sleep(0)
        return _unauthorized()


class TestConcurrentRequests:
    async def test_one_refresh_for_many_expired_requests(self):
        callers = 5
        backend = GatedBackend(callers, _refresh_ok("fresh"))
        store = MemoryTokenStore("stale", "refresh-1")
        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(backend))

        gateway = ClientTokenGateway(BASE_URL, store, client=client)
        responses = await asyncio.gather(
            *(gateway.get(INTAKE_PATH) for _ in range(callers))
        )
        await client.aclose()

        assert [r.status_code for r in responses] == [200] * callers
        assert backend.refresh_calls == 1
        assert backend.rejected == callers
        assert backend.replayed == callers
        assert gateway.state.in_flight is False
        assert gateway.state.waiters == []

    async def test_failed_refresh_rejects_every_waiter(self):
        callers = 4
        backend = GatedBackend(callers, _unauthorized("INVALID_SESSION"))
        store = MemoryTokenStore("stale", "refresh-1")
        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(backend))

        gateway = ClientTokenGateway(BASE_URL, store, client=client)
        results = await asyncio.gather(
            *(gateway.get(INTAKE_PATH) for _ in range(callers)),
            return_exceptions=True,
        )
        await client.aclose()

        assert all(isinstance(r, RefreshFailed) for r in results)
        assert backend.refresh_calls == 1
        assert backend.replayed == 0
        assert gateway.state.in_flight is False
        assert gateway.state.waiters == []
        assert store.get_access_token() is None

    async def test_gateway_recovers_after_failed_refresh(self):
        store = MemoryTokenStore("stale", "refresh-1")

        def intake(request):
            if _bearer(request) == "Bearer fresh":
                return httpx.Response(200)
            return _unauthorized()

        async with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
            router.get(INTAKE_PATH).mock(side_effect=intake)
            refresh_route = router.post("/auth/refresh").mock(
                side_effect=[_unauthorized("INVALID_SESSION"), _refresh_ok("fresh")]
            )
            async with ClientTokenGateway(BASE_URL, store) as gateway:
                with pytest.raises(RefreshFailed):
                    await gateway.get(INTAKE_PATH)

                store.set_tokens("stale-again", "refresh-2")
                response = await gateway.get(INTAKE_PATH)

        assert response.status_code == 200
        assert refresh_route.call_count == 2
        assert store.get_access_token() == "fresh"

    async def test_malformed_refresh_reply_rejects_every_waiter(self):
        callers = 3
        backend = GatedBackend(callers, httpx.Response(200, json=["unexpected"]))
        store = MemoryTokenStore("stale", "refresh-1")
        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(backend))

        gateway = ClientTokenGateway(BASE_URL, store, client=client)
        results = await asyncio.wait_for(
            asyncio.gather(
                *(gateway.get(INTAKE_PATH) for _ in range(callers)),
                return_exceptions=True,
            ),
            timeout=5,
        )
        await client.aclose()

        assert all(isinstance(r, RefreshFailed) for r in results)
        assert backend.refresh_calls == 1
        assert gateway.state.in_flight is False
        assert gateway.state.waiters == []
        assert store.get_refresh_token() is None

    async def test_token_store_failure_rejects_every_waiter(self):
        class BrokenStore(MemoryTokenStore):
            def set_tokens(self, access_token, refresh_token=None):
                raise RuntimeError("keychain locked")

        callers = 3
        backend = GatedBackend(callers, _refresh_ok("fresh"))
        store = BrokenStore("stale", "refresh-1")
        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(backend))

        gateway = ClientTokenGateway(BASE_URL, store, client=client)
        results = await asyncio.wait_for(
            asyncio.gather(
                *(gateway.get(INTAKE_PATH) for _ in range(callers)),
                return_exceptions=True,
            ),
            timeout=5,
        )
        await client.aclose()

        assert all(isinstance(r, RefreshFailed) for r in results)
        assert all(isinstance(r.__cause__, RuntimeError) for r in results)
        assert backend.refresh_calls == 1
        assert backend.replayed == 0
        assert gateway.state.waiters == []
        assert store.get_access_token() is None

    async def test_late_rejection_replays_with_new_token(self):
        # B's 401 is answered only after A has refreshed and replayed
        both_sent = asyncio.Event()
        a_replayed = asyncio.Event()
        counts = {"stale": 0, "fresh": 0, "refresh": 0}

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/auth/refresh":
                counts["refresh"] += 1
                return _refresh_ok("fresh")
            if _bearer(request) == "Bearer fresh":
                counts["fresh"] += 1
                a_replayed.set()
                return httpx.Response(200, json={"success": True})
            counts["stale"] += 1
            if counts["stale"] == 1:
                await both_sent.wait()
            else:
                both_sent.set()
                await a_replayed.wait()
            return _unauthorized()

        store = MemoryTokenStore("stale", "refresh-1")
        client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        gateway = ClientTokenGateway(BASE_URL, store, client=client)
        responses = await asyncio.wait_for(
            asyncio.gather(gateway.get(INTAKE_PATH), gateway.get(INTAKE_PATH)),
            timeout=5,
        )
        await client.aclose()

        assert [r.status_code for r in responses] == [200, 200]
        assert counts == {"stale": 2, "fresh": 2, "refresh": 1}
        assert store.get_access_token() == "fresh"
        assert gateway.state.in_flight is False
