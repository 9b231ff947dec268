# tests/utils/test_vm_xml_generator.py
import uuid
from broker.utils.vm_xml_generator import generate_vm_xml

def test_generate_vm_xml_fills_machine_template():
    """
    generate_vm_xml이 실행 서버 도메인 템플릿의 모든 값을 치환하는지 테스트합니다.
    """
    # 1. 준비 (Arrange)
    vm_name = "broker-exec-server-1a2b3c4d"
    vm_uuid = str(uuid.uuid4())
    cpu_count = 4
    ram_mb = 8192
    image_filepath = f"/var/lib/libvirt/images/{vm_name}.qcow2"

    # 2. 실행 (Act)
    generated_xml = generate_vm_xml(
        vm_name=vm_name,
        vm_uuid=vm_uuid,
        cpu_count=cpu_count,
        ram_mb=ram_mb,
        image_filepath=image_filepath
    )

    # 3. 단언 (Assert)
    assert f"<name>{vm_name}</name>" in generated_xml
    assert f"<uuid>{vm_uuid}</uuid>" in generated_xml
    assert f"<vcpu>{cpu_count}</vcpu>" in generated_xml

    # RAM은 KiB로 변환되었는지 확인
    ram_kib = ram_mb * 1024
    assert f"<memory unit='KiB'>{ram_kib}</memory>" in generated_xml
    assert f"<currentMemory unit='KiB'>{ram_kib}</currentMemory>" in generated_xml

    assert f"<source file='{image_filepath}'/>" in generated_xml
    assert "<driver name='qemu' type='qcow2'/>" in generated_xml
