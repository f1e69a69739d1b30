from backend.app.models import Group, GroupMember, User
from backend.app.security import hash_password

PASSWORD = "Secret123!"


def seed_user(db, email, role="member", name=None, password=PASSWORD):
    user = User(
        email=email,
        name=name or email.split("@")[0].replace(".", " ").title(),
        role=role,
        password_hash=hash_password(password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def seed_group(db, name, members):
    """``members`` is a list of (user, group_role) pairs."""
    group = Group(name=name)
    db.add(group)
    db.flush()
    for user, role in members:
        db.add(GroupMember(group_id=group.id, user_id=user.id, role=role))
    db.commit()
    db.refresh(group)
    return group


def login(client, email, password=PASSWORD):
    res = client.post("/api/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200
    me = client.get("/api/auth/me")
    assert me.status_code == 200
    return me.json()["csrf_token"]
