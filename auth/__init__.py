"""auth/ -- Accounts, credentials and sessions for TeamPass.

Layer rule: auth/ imports from core/ (and notify/ for the EmailSender
protocol in session.py). It does NOT import from api/ or teams/.
api/ and teams/ import from auth/, not the other way around.
"""
