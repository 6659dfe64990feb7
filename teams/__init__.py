"""
teams/ -- Team invitations and seat accounting.

A team is identified by its owner's user id. Members point at the owner
through users.parent_account_id (see auth/store.py); invites live in their
own table here.

Layer rule: may import from auth/, core/ and notify/. Never from api/.
"""
