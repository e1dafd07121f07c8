"""auth/ -- Identity, credential issuance/rotation and device sessions for workgate.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or workspace/.
api/ and workspace/ import from auth/, not the other way around.
"""
