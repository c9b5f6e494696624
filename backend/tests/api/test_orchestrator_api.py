"""
HTTP API tests.

Covers:
- Health and authentication of the three caller kinds (admin, server, team)
- Tournament setup through PUT endpoints
- Veto submission and its error mapping
- MatchZy webhooks, config download, demo and report uploads
"""

import pytest

MAP_POOL = ["de_ancient", "de_anubis", "de_dust2", "de_inferno", "de_mirage", "de_nuke", "de_vertigo"]


def roster(team: int) -> list[dict]:
    return [
        {"steamId": str(76561198000000000 + team * 100 + p), "name": f"team{team}-p{p}"}
        for p in range(1, 6)
    ]


async def setup_final(client, admin_headers, veto=False):
    """Two teams, one server and a started BO1 final."""
    for team in (1, 2):
        response = await client.put(
            f"/api/teams/team-{team}",
            json={"name": f"Team {team}", "tag": f"T{team}", "players": roster(team)},
            headers=admin_headers,
        )
        assert response.status_code == 200
    response = await client.put(
        "/api/servers/srv-1",
        json={"name": "Server 1", "host": "10.0.0.1", "port": 27015, "password": "rcon-secret"},
        headers=admin_headers,
    )
    assert response.status_code == 200

    response = await client.put(
        "/api/tournaments",
        json={
            "id": "cup",
            "name": "Cup",
            "type": "single_elimination",
            "format": "bo1",
            "maps": MAP_POOL,
            "teamIds": ["team-1", "team-2"],
            "settings": {"vetoEnabled": veto, "seedingMethod": "manual"},
        },
        headers=admin_headers,
    )
    assert response.status_code == 201
    response = await client.post("/api/tournaments/cup/start", headers=admin_headers)
    assert response.status_code == 200
    return response.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_without_backing_services(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"] == {
            "database": "not configured",
            "redis": "not configured",
            "engine": "running",
        }

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestAdminAuth:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Key": "not-the-right-key-at-all"}])
    async def test_admin_routes_require_key(self, client, headers):
        response = await client.get("/api/servers/availability", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"
        assert response.json()["traceId"]

    @pytest.mark.asyncio
    async def test_webhook_token_is_not_an_admin_key(self, client, webhook_headers):
        response = await client.post("/api/tournaments/cup/start", headers=webhook_headers)
        assert response.status_code == 401


class TestSetup:
    @pytest.mark.asyncio
    async def test_create_tournament_returns_bracket(self, client, admin_headers):
        started = await setup_final(client, admin_headers)

        assert started["allocated"] == 1
        response = await client.get("/api/tournaments/cup", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "in_progress"
        assert response.json()["teamIds"] == ["team-1", "team-2"]

        response = await client.get("/api/tournaments/cup/matches", headers=admin_headers)
        [match] = response.json()["matches"]
        assert match["slug"] == "r1m1"
        assert match["status"] == "loaded"
        assert match["serverId"] == "srv-1"

    @pytest.mark.asyncio
    async def test_unknown_team_is_404(self, client, admin_headers):
        response = await client.put(
            "/api/tournaments",
            json={
                "name": "Cup",
                "type": "single_elimination",
                "format": "bo1",
                "maps": MAP_POOL,
                "teamIds": ["ghost-1", "ghost-2"],
            },
            headers=admin_headers,
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "TEAM_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_invalid_body_is_400(self, client, admin_headers):
        response = await client.put(
            "/api/tournaments",
            json={"name": "Cup", "type": "ladder", "format": "bo1", "maps": MAP_POOL},
            headers=admin_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_bad_steam_id_rejected(self, client, admin_headers):
        response = await client.put(
            "/api/teams/team-1",
            json={"name": "Team 1", "players": [{"steamId": "123", "name": "short"}]},
            headers=admin_headers,
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_server_response_hides_password(self, client, admin_headers):
        response = await client.put(
            "/api/servers/srv-1",
            json={"name": "Server 1", "host": "10.0.0.1", "port": 27015, "password": "rcon-secret"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert "password" not in response.json()
        assert response.json()["currentMatch"] is None

    @pytest.mark.asyncio
    async def test_availability(self, client, admin_headers):
        await setup_final(client, admin_headers)

        response = await client.get("/api/servers/availability", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["total"] == 1
        assert response.json()["available"] == 0


class TestVeto:
    @pytest.mark.asyncio
    async def test_veto_before_start_is_409(self, client, admin_headers):
        for team in (1, 2):
            await client.put(
                f"/api/teams/team-{team}",
                json={"name": f"Team {team}", "players": roster(team)},
                headers=admin_headers,
            )
        await client.put(
            "/api/tournaments",
            json={
                "id": "cup",
                "name": "Cup",
                "type": "single_elimination",
                "format": "bo1",
                "maps": MAP_POOL,
                "teamIds": ["team-1", "team-2"],
            },
            headers=admin_headers,
        )

        response = await client.get("/api/matches/r1m1/veto", params={"team": "team1"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "STATE_CONFLICT"

    @pytest.mark.asyncio
    async def test_ban_then_out_of_turn(self, client, admin_headers):
        await setup_final(client, admin_headers, veto=True)

        view = await client.get("/api/matches/r1m1/veto", params={"team": "team1"})
        assert view.status_code == 200
        assert view.json()["your_turn"] is True

        response = await client.post(
            "/api/matches/r1m1/veto",
            json={"team": "team1", "action": "ban", "mapName": "de_nuke"},
        )
        assert response.status_code == 200
        assert response.json()["your_turn"] is False
        assert "de_nuke" not in response.json()["available_maps"]

        response = await client.post(
            "/api/matches/r1m1/veto",
            json={"team": "team1", "action": "ban", "mapName": "de_dust2"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_VETO_ACTION"

    @pytest.mark.asyncio
    async def test_ban_needs_map_name(self, client, admin_headers):
        await setup_final(client, admin_headers, veto=True)

        response = await client.post("/api/matches/r1m1/veto", json={"team": "team1", "action": "ban"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_simulate_requires_admin(self, client, admin_headers):
        await setup_final(client, admin_headers, veto=True)

        assert (await client.post("/api/matches/r1m1/veto/simulate")).status_code == 401
        response = await client.post("/api/matches/r1m1/veto/simulate", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        allocated = await client.post("/api/tournaments/cup/allocate", headers=admin_headers)
        assert allocated.json()["allocated"] == 1


class TestServerCallbacks:
    @pytest.mark.asyncio
    async def test_event_requires_token(self, client, admin_headers):
        await setup_final(client, admin_headers)

        response = await client.post(
            "/api/events/r1m1", json={"event": "going_live"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_going_live(self, client, admin_headers, webhook_headers):
        await setup_final(client, admin_headers)
        match_id = (await client.get("/api/matches/r1m1")).json()["matchId"]

        response = await client.post(
            "/api/events/r1m1",
            json={"event": "going_live", "matchid": match_id, "map_number": 0},
            headers=webhook_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"accepted": True, "reason": None}
        match = await client.get("/api/matches/r1m1")
        assert match.json()["status"] == "live"

    @pytest.mark.asyncio
    async def test_unknown_match_acknowledged(self, client, webhook_headers):
        response = await client.post(
            "/api/events/r9m9",
            json={"event": "going_live", "matchid": 999},
            headers=webhook_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"accepted": False, "reason": "unknown match"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [b"not json", b"[1, 2]", b'{"matchid": 1}', b'{"event": "player_connect"}'],
    )
    async def test_malformed_payloads(self, client, webhook_headers, body):
        response = await client.post(
            "/api/events/r1m1",
            content=body,
            headers={**webhook_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_PAYLOAD"


    @pytest.mark.asyncio
    async def test_config_download(self, client, admin_headers, config_headers):
        await setup_final(client, admin_headers)

        assert (await client.get("/api/matches/r1m1.json")).status_code == 401

        response = await client.get("/api/matches/r1m1.json", headers=config_headers)

        assert response.status_code == 200
        config = response.json()
        match = (await client.get("/api/matches/r1m1")).json()
        assert config["matchid"] == match["matchId"]
        assert isinstance(config["matchid"], int)
        assert config["num_maps"] == 1
        assert config["maplist"][0] in MAP_POOL
        assert config["team1"]["name"] == "Team 1"

    @pytest.mark.asyncio
    async def test_config_not_available_before_load(self, client, admin_headers, config_headers):
        await setup_final(client, admin_headers, veto=True)

        response = await client.get("/api/matches/r1m1.json", headers=config_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_demo_upload(self, client, admin_headers, webhook_headers, engine, tmp_path):
        await setup_final(client, admin_headers)

        response = await client.post(
            "/api/demos/r1m1/upload",
            content=b"HL2DEMO-bytes",
            headers={
                **webhook_headers,
                "MatchZy-FileName": "r1m1_de_ancient.dem",
                "MatchZy-MatchId": "r1m1",
                "MatchZy-MapNumber": "0",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["mapNumber"] == 1
        assert data["size"] == 13
        assert (tmp_path / "demos" / data["file"]).read_bytes() == b"HL2DEMO-bytes"
        assert (await engine.get_match("r1m1")).demo_file == data["file"]

    @pytest.mark.asyncio
    async def test_demo_upload_checks_headers(self, client, admin_headers, webhook_headers):
        await setup_final(client, admin_headers)

        missing = await client.post("/api/demos/r1m1/upload", content=b"x", headers=webhook_headers)
        assert missing.status_code == 400

        mismatch = await client.post(
            "/api/demos/r1m1/upload",
            content=b"x",
            headers={**webhook_headers, "Get5-FileName": "x.dem", "Get5-MatchId": "r1m2"},
        )
        assert mismatch.status_code == 400

    @pytest.mark.asyncio
    async def test_report(self, client, admin_headers, webhook_headers, repository):
        await setup_final(client, admin_headers)

        response = await client.post(
            "/api/events/report",
            json={"matchid": "r1m1", "winner": "team1"},
            headers=webhook_headers,
        )
        assert response.json() == {"accepted": True, "reason": None}
        assert (await repository.list_events("r1m1"))[-1]["event_type"] == "match_report"

        response = await client.post(
            "/api/events/report", json={"matchid": "r9m9"}, headers=webhook_headers
        )
        assert response.json() == {"accepted": False, "reason": "unknown_match"}


class TestAdminActions:
    @pytest.mark.asyncio
    async def test_restart_match(self, client, admin_headers):
        await setup_final(client, admin_headers)

        response = await client.post("/api/matches/r1m1/restart", headers=admin_headers)

        assert response.status_code == 200
        match = await client.get("/api/matches/r1m1")
        assert match.json()["status"] == "loaded"

    @pytest.mark.asyncio
    async def test_allocate_loaded_match_is_409(self, client, admin_headers):
        await setup_final(client, admin_headers)

        response = await client.post("/api/matches/r1m1/allocate", headers=admin_headers)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_reset_then_delete(self, client, admin_headers):
        await setup_final(client, admin_headers)

        reset = await client.post("/api/tournaments/cup/reset", headers=admin_headers)
        assert reset.status_code == 200
        assert reset.json()["matchesReset"] == 1

        deleted = await client.delete("/api/tournaments/cup", headers=admin_headers)
        assert deleted.json()["success"] is True
        missing = await client.get("/api/tournaments/cup", headers=admin_headers)
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_regenerate_requires_force(self, client, admin_headers):
        await setup_final(client, admin_headers)

        refused = await client.post("/api/tournaments/cup/bracket/regenerate", headers=admin_headers)
        assert refused.status_code == 409

        forced = await client.post(
            "/api/tournaments/cup/bracket/regenerate", params={"force": "true"}, headers=admin_headers
        )
        assert forced.status_code == 200
        assert [m["status"] for m in forced.json()["matches"]] == ["pending"]


class TestEntrypoint:
    def test_runs_uvicorn_with_settings(self, monkeypatch):
        import runpy
        import warnings

        import uvicorn

        from orchestrator.config import get_settings

        calls = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

        with warnings.catch_warnings():
            # orchestrator.main is already imported by the app fixture
            warnings.simplefilter("ignore", RuntimeWarning)
            runpy.run_module("orchestrator.main", run_name="__main__")

        settings = get_settings()
        [(app, kwargs)] = calls
        assert app == "orchestrator.main:app"
        assert kwargs["host"] == settings.app_host
        assert kwargs["port"] == settings.app_port
        assert kwargs["log_level"] == settings.log_level.lower()
