"""Tests for reconciler.outputs module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from reconciler.errors import OutputError
from reconciler.outputs import attributes_by_id, resolve_outputs
from reconciler.state import StateRecord
from values import Reference, parse_expression


ATTRIBUTES = {
    'fake.vm': {'label': 'vm', 'ip': '10.0.0.5', 'ports': [80, 443], 'id': 'vm-1'},
    'fake.net': {'label': 'net', 'id': 'net-1'},
}


class TestResolveOutputs:
    """Tests for resolve_outputs()."""

    def test_reference_keeps_native_type(self):
        outputs = {'ports': parse_expression('${fake.vm.ports}')}
        assert resolve_outputs(outputs, ATTRIBUTES) == {'ports': [80, 443]}

    def test_template(self):
        outputs = {'url': parse_expression('http://${fake.vm.ip}:8080/')}
        assert resolve_outputs(outputs, ATTRIBUTES) == {'url': 'http://10.0.0.5:8080/'}

    def test_literal_and_nested(self):
        outputs = {
            'env': 'prod',
            'ids': parse_expression(['${fake.vm.id}', '${fake.net.id}']),
        }
        assert resolve_outputs(outputs, ATTRIBUTES) == {'env': 'prod', 'ids': ['vm-1', 'net-1']}

    def test_missing_resource(self):
        with pytest.raises(OutputError) as exc_info:
            resolve_outputs({'gone': Reference('fake.db', 'id')}, ATTRIBUTES)
        assert exc_info.value.output == 'gone'
        assert exc_info.value.resource_id == 'fake.db'
        assert 'does not exist' in str(exc_info.value)

    def test_missing_attribute(self):
        with pytest.raises(OutputError, match="has no attribute 'hostname'") as exc_info:
            resolve_outputs({'host': Reference('fake.vm', 'hostname')}, ATTRIBUTES)
        assert exc_info.value.phase == 'output'

    def test_empty(self):
        assert resolve_outputs({}, ATTRIBUTES) == {}


class TestAttributesById:
    """Tests for attributes_by_id()."""

    def test_merges_computed_and_id(self):
        records = {
            'fake.a': StateRecord(id='fake.a', type='fake', external_id='a-1',
                                  attributes={'label': 'a'}, computed={'arn': 'arn:a-1'}),
        }
        assert attributes_by_id(records) == {
            'fake.a': {'label': 'a', 'arn': 'arn:a-1', 'id': 'a-1'},
        }
