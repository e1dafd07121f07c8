"""workspace/ -- Memberships, permission resolution, authorization guard and invitations.

Layer rule: workspace/ imports only stdlib, third-party libraries, core/ and auth/.
It does NOT import from api/.
"""
