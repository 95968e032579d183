"""
Events module.

Tenants (partners) own events; events own guests and gates. Events are archived rather
than deleted; only an owner may hard-delete one.
"""
