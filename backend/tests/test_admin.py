from models import ChatSession, Message, QkoinTransaction, SystemLog, User


def test_admin_routes_require_admin(client, login):
    assert client.get("/api/admin/users").status_code == 401
    login("alice")
    resp = client.get("/api/admin/users")
    assert resp.status_code == 403
    assert resp.json()["error"] == "Acesso negado. Apenas administradores."


def test_list_users_and_status(client, login, make_user, db):
    make_user("alice", qkoins=7)
    login("daniel08")

    users = {u["username"]: u for u in client.get("/api/admin/users").json()}
    assert users["alice"]["qkoins"] == 7
    assert users["alice"]["messageCount"] == 0
    assert users["alice"]["banned"] is False

    status = client.get("/api/admin/status").json()
    assert status["online"] is True
    assert status["totalUsers"] == 2
    assert status["totalMessages"] == 0


def test_ban_blocks_login_and_existing_session(client, make_user, db):
    alice = make_user("alice")
    make_user("daniel08")

    admin_login = client.post("/api/auth/login", json={"username": "daniel08", "password": "secret1"})
    assert admin_login.status_code == 200
    resp = client.patch(f"/api/admin/users/{alice.id}/ban", json={"banned": True})
    assert resp.json()["message"] == "Usuário banido"

    client.post("/api/auth/logout")
    assert client.post("/api/auth/login", json={"username": "alice", "password": "secret1"}).status_code == 403
    assert db.query(SystemLog).filter(SystemLog.message.like("%banned user%")).count() == 1


def test_delete_user_cascades(client, login, make_user, db):
    alice = make_user("alice")
    chat = ChatSession(user_id=alice.id, title="x")
    db.add(chat)
    db.commit()
    db.add(Message(session_id=chat.id, role="user", content="oi"))
    db.add(QkoinTransaction(user_id=alice.id, amount=10, type="daily_reward", description="Recompensa diária"))
    db.commit()
    alice_id = alice.id

    admin = login("daniel08")
    assert client.delete(f"/api/admin/users/{admin.id}").status_code == 400
    assert client.delete(f"/api/admin/users/{alice_id}").json()["success"] is True

    db.expunge_all()
    assert db.get(User, alice_id) is None
    assert db.query(ChatSession).filter(ChatSession.user_id == alice_id).count() == 0
    assert db.query(QkoinTransaction).filter(QkoinTransaction.user_id == alice_id).count() == 0
    assert db.query(Message).count() == 0
    assert client.delete(f"/api/admin/users/{alice_id}").status_code == 404


def test_clear_user_history(client, login, make_user, db):
    alice = make_user("alice")
    chat = ChatSession(user_id=alice.id, title="x")
    db.add(chat)
    db.commit()
    db.add(Message(session_id=chat.id, role="user", content="oi"))
    db.commit()

    login("daniel08")
    resp = client.delete(f"/api/admin/users/{alice.id}/history")
    assert resp.json()["message"] == "Histórico do usuário limpo"
    assert db.query(Message).count() == 0
    assert db.query(ChatSession).count() == 1


def test_maintenance_mode(client, login, make_user, fake_gemini):
    assert client.get("/api/admin/system/config").json()["maintenanceMode"] is False

    login("daniel08")
    resp = client.patch("/api/admin/system/toggle", json={"online": False, "message": "Volto já"})
    assert resp.json()["message"] == "Sistema desativado"

    config_body = client.get("/api/admin/system/config").json()
    assert config_body == {"maintenanceMode": True, "maintenanceMessage": "Volto já"}

    # the admin can still chat
    admin_chat = client.post("/api/chat/simple-send", json={"content": "oi"})
    assert admin_chat.status_code == 200

    client.post("/api/auth/logout")
    blocked = client.post("/api/chat/simple-send", json={"content": "oi"})
    assert blocked.status_code == 503
    assert blocked.json() == {"error": "Volto já", "maintenance": True}


def test_logs_and_clean_sessions(client, login, db):
    admin = login("daniel08")
    for i in range(5):
        client.post("/api/chat/sessions", json={"title": f"S{i}"})

    resp = client.post("/api/admin/clean-sessions").json()
    assert resp["deleted"] == 2
    assert resp["kept"] == 3
    assert db.query(ChatSession).filter(ChatSession.user_id == admin.id).count() == 3

    logs = client.get("/api/admin/logs").json()
    assert logs[0]["message"] == "Admin cleaned 2 old sessions"

    assert client.delete("/api/admin/logs").json()["success"] is True
    logs = client.get("/api/admin/logs").json()
    assert [entry["message"] for entry in logs] == ["All system logs cleared"]


def test_health_and_ping(client):
    health = client.get("/api/health").json()
    assert health["status"] == "ok"
    assert health["uptime"] >= 0
    assert client.get("/api/ping").json()["pong"] is True
