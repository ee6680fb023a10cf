"""
Copyright 2025 Inmanta

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Contact: code@inmanta.com
"""

CONVERGE_VERSION = "0.1.0"
RUNNING_TESTS = False
"""
    This is enabled/disabled by the test suite when tests are run.
    It makes non-serializable log arguments fail loudly instead of being cast to str.
"""

if __name__ == "__main__":
    import converge.app

    converge.app.app()
