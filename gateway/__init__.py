"""gateway/ -- Layered security gateway for the FlightSchool API.

Request order: API key gate -> session authenticator -> CSRF guard ->
authorization resolver -> handler. The MFA escalation flow runs beside the
pipeline during login.

Layer rule: gateway/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/. api/ imports from gateway/, not the other way around.
"""
