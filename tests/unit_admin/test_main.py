from unit_admin.main import app, root


def test_root_reports_service_status() -> None:
    assert root() == {'status': 'Unit Administration API Running'}


def test_admin_routes_are_registered() -> None:
    routes = {(route.path, method) for route in app.routes for method in getattr(route, 'methods', set())}

    assert ('/admin/users', 'GET') in routes
    assert ('/admin/users/pending', 'GET') in routes
    assert ('/admin/users/{user_id}/approve', 'POST') in routes
    assert ('/admin/users/bulk-approve', 'POST') in routes
    assert ('/admin/users/bulk-reject', 'POST') in routes
    assert ('/admin/users/{user_id}', 'DELETE') in routes
    assert ('/admin/units', 'GET') in routes
    assert ('/admin/units/{unit_id}', 'PUT') in routes
