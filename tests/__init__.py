import sys
import warnings

# This is used in _capture_internal_warnings. We need to run this at import
# time because that's where deprecation warnings of the package would be
# thrown.
#
# This lives in tests/__init__.py because tests/conftest.py gets loaded too
# late.
assert "crumbtrail" not in sys.modules

_warning_recorder_mgr = warnings.catch_warnings(record=True)
_warning_recorder = _warning_recorder_mgr.__enter__()
