"""Dispatch runtime: workers, execution units, classifier and the dispatcher loop.

Import from the submodules directly; ``remote_dispatch.config`` depends on
``dispatch.models``, so this package does not re-export anything.
"""
