import pytest
from recordstore import IndexSpec, ValidationError, is_valid_database_name, is_valid_table_name
from recordstore.validation import check_record_id, normalize_indexes, validate_index_spec, validate_names


@pytest.mark.parametrize('name', ['shop-db', 'shop_db', 'a1-db', 'TEST_db'])
def test_valid_database_names(name):
    assert is_valid_database_name(name)


@pytest.mark.parametrize('name', ['', 'shop', 'shopdb', 'shop-database', 'my-shop-db', '-db', None, 42])
def test_invalid_database_names(name):
    assert not is_valid_database_name(name)


@pytest.mark.parametrize('name', ['orders-table', 'orders_table', 'a-b', 'Test1_2'])
def test_valid_table_names(name):
    assert is_valid_table_name(name)


@pytest.mark.parametrize('name', ['', 'orders', 'orders-', '-orders', 'a-b-c', 'orders table', None])
def test_invalid_table_names(name):
    assert not is_valid_table_name(name)


def test_validate_names_messages():
    with pytest.raises(ValidationError, match='Must end with -db or _db'):
        validate_names('shop', 'orders-table')
    with pytest.raises(ValidationError, match='Must contain hyphen or underscore'):
        validate_names('shop-db', 'orders')


def test_bare_string_index_is_field_name():
    spec = validate_index_spec('email')
    assert spec == IndexSpec(name='email', key_path='email')
    with pytest.raises(ValidationError, match='Must be a valid field name'):
        validate_index_spec('bad field')
    with pytest.raises(ValidationError, match='Must be a valid field name'):
        validate_index_spec('x')


def test_structured_index_mapping():
    spec = validate_index_spec({'name': 'sku-index', 'keyPath': 'item.sku', 'options': {'unique': True}})
    assert spec.name == 'sku-index'
    assert spec.key_path == 'item.sku'
    assert spec.unique is True and spec.multi_entry is False


def test_compound_key_path_becomes_tuple():
    spec = validate_index_spec({'name': 'name_index', 'keyPath': ['last', 'first']})
    assert spec.key_path == ('last', 'first')
    assert spec.is_compound
    assert spec.key_path_json() == ['last', 'first']


@pytest.mark.parametrize('descriptor,message', [
    ({'name': '', 'keyPath': 'test'}, 'Must end with -index or _index'),
    ({'name': 'no-suffix', 'keyPath': 'test'}, 'Must end with -index or _index'),
    ({'name': 'valid-index', 'keyPath': ''}, 'Invalid keyPath'),
    ({'name': 'valid-index', 'keyPath': 'a..b'}, 'Invalid keyPath'),
    ({'name': 'valid-index', 'keyPath': []}, 'Compound keyPath cannot be empty'),
    ({'name': 'valid-index', 'keyPath': ['ok', 'not ok']}, 'Invalid keyPath segment: not ok'),
    ({'name': 'valid-index', 'keyPath': 'a', 'options': {'sparse': True}}, 'Invalid option: sparse'),
    ({'name': 'valid-index', 'keyPath': 'a', 'options': {'unique': 'yes'}}, 'Option unique must be a boolean'),
    ({'name': 'valid-index', 'keyPath': 'a', 'options': {'multiEntry': 1}}, 'Option multiEntry must be a boolean'),
    ({'name': 'valid-index', 'keyPath': ['a', 'b'], 'options': {'multiEntry': True}},
     'multiEntry option cannot be used with compound keyPath'),
])
def test_invalid_index_descriptors(descriptor, message):
    with pytest.raises(ValidationError, match=message):
        validate_index_spec(descriptor)


def test_multi_entry_false_with_compound_is_allowed():
    spec = validate_index_spec({'name': 'pair-index', 'keyPath': ['a', 'b'], 'options': {'multiEntry': False}})
    assert spec.is_compound and not spec.multi_entry


def test_index_spec_instance_is_revalidated():
    with pytest.raises(ValidationError, match='multiEntry'):
        validate_index_spec(IndexSpec(name='tags-index', key_path=('a', 'b'), multi_entry=True))
    assert validate_index_spec(IndexSpec(name='tags-index', key_path='tags', multi_entry=True)).multi_entry


def test_normalize_indexes_rejects_whole_list():
    with pytest.raises(ValidationError):
        normalize_indexes(['status', {'name': 'bad', 'keyPath': 'x'}])
    with pytest.raises(ValidationError, match='Duplicate index name'):
        normalize_indexes(['status', 'status'])
    assert normalize_indexes([]) == []


@pytest.mark.parametrize('value', [1, 2.5, 'abc', -3, 2 ** 63 - 2, -(2 ** 63), 9.2e18])
def test_record_ids_accepted(value):
    assert check_record_id(value) == value


@pytest.mark.parametrize('value', [
    None, True, [1], {'a': 1}, float('nan'),
    float('inf'), float('-inf'), 2 ** 63 - 1, -(2 ** 63) - 1, 1e19,
])
def test_record_ids_rejected(value):
    with pytest.raises(ValidationError):
        check_record_id(value)
